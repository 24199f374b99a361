# GoClaw Channel Links
# Turns a decrypted channel credential into a link a user can open.
# Display only: any failure yields None and never affects a deployment.

import logging

import requests

log = logging.getLogger("goclaw")

TELEGRAM_API_BASE = "https://api.telegram.org"


def telegram_link(username):
    return f"https://t.me/{username.lstrip('@')}"


def resolve_telegram_link(bot_token, session=None, timeout=10):
    """Look the bot up with getMe and return its t.me link."""
    http = session or requests
    try:
        resp = http.get(f"{TELEGRAM_API_BASE}/bot{bot_token}/getMe", timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        # The URL embeds the token; log the exception type only.
        log.warning("Telegram getMe failed: %s", type(e).__name__)
        return None

    if not data.get("ok"):
        log.warning("Telegram getMe returned ok=false")
        return None
    username = (data.get("result") or {}).get("username")
    if not username:
        log.warning("Telegram bot has no username")
        return None
    return telegram_link(username)


def resolve_channel_link(channel, credential, session=None):
    if channel == "telegram":
        return resolve_telegram_link(credential, session=session)
    return None
