# GoClaw Marketplace Client
# Thin transport over the Akash console API: certificates, deployments, bids, leases.
#
# Retry policy (per request):
#   transient  = requests.Timeout, requests.ConnectionError, HTTP 429, HTTP 5xx
#   delay      = base_delay * 2**(attempt - 1), at most max_retries attempts
#   exhausted  → TransientTransportError
#   other 4xx  → MarketplaceRequestError immediately
#
# The lease endpoint answers 503 when the chosen provider cannot take the
# workload. That status is reported as ProviderUnavailableError without retry
# so the negotiator can fail over to the next bid.

import logging
import time
from dataclasses import dataclass
from typing import Optional

import requests

from config import MIN_DEPOSIT_USD, MarketplaceSettings
from errors import (
    CertificateError,
    MarketplaceError,
    MarketplaceProtocolError,
    MarketplaceRequestError,
    ProviderUnavailableError,
    TransientTransportError,
    ValidationError,
)

log = logging.getLogger("goclaw")

PROVIDER_UNAVAILABLE_STATUSES = (503,)
CLOSED_BID_STATES = ("closed", "lost")


# ── Wire types ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Bid:
    provider: str
    amount: str
    denom: str
    dseq: str
    gseq: int = 1
    oseq: int = 1
    bseq: int = 1
    owner: str = ""
    state: str = "open"
    order: int = 0

    @property
    def price(self) -> float:
        return float(self.amount)

    @property
    def key(self):
        return (self.provider, self.gseq, self.oseq, self.bseq)

    @classmethod
    def from_api(cls, entry, order=0):
        """Parse one element of GET /v1/bids. Accepts the wrapped and bare shapes."""
        bid = entry.get("bid", entry) if isinstance(entry, dict) else None
        if not isinstance(bid, dict):
            raise MarketplaceProtocolError("Bid entry is not an object")
        bid_id = bid.get("id") or {}
        price = bid.get("price") or {}
        provider = bid_id.get("provider")
        if not provider:
            raise MarketplaceProtocolError("Bid entry has no provider")
        amount = str(price.get("amount", ""))
        try:
            float(amount)
        except ValueError:
            raise MarketplaceProtocolError(f"Bid from {provider} has invalid price {amount!r}")
        return cls(
            provider=provider,
            amount=amount,
            denom=price.get("denom", ""),
            dseq=str(bid_id.get("dseq", "")),
            gseq=int(bid_id.get("gseq", 1)),
            oseq=int(bid_id.get("oseq", 1)),
            bseq=int(bid_id.get("bseq", 1)),
            owner=bid_id.get("owner", ""),
            state=bid.get("state", "open"),
            order=order,
        )


@dataclass(frozen=True)
class Lease:
    dseq: str
    gseq: int
    oseq: int
    provider: str
    state: str = "active"
    service_url: Optional[str] = None

    @property
    def lease_id(self):
        return f"{self.dseq}-{self.gseq}-{self.oseq}"


def _extract_service_url(lease):
    """First URI published by any service on the lease, if the provider has one yet."""
    status = lease.get("status") or {}
    services = status.get("services") or {}
    for name in services:
        uris = (services[name] or {}).get("uris") or []
        if uris:
            uri = uris[0]
            if "://" not in uri:
                uri = f"http://{uri}"
            return uri
    return None


# ── Client ────────────────────────────────────────────────────────────


class MarketplaceClient:
    def __init__(self, settings: MarketplaceSettings = None, session=None,
                 sleep=time.sleep, clock=time.monotonic):
        self.settings = settings or MarketplaceSettings.from_env()
        self.api_key = self.settings.require_api_key()
        self.base_url = self.settings.base_url.rstrip("/")
        self.session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock

    def _headers(self):
        return {"Content-Type": "application/json", "x-api-key": self.api_key}

    def _request(self, method, path, json=None, params=None, max_attempts=None,
                 timeout=None, provider=None, dseq=None, unavailable_statuses=()):
        url = f"{self.base_url}{path}"
        attempts = max(1, max_attempts or self.settings.http_max_retries)
        base_delay = self.settings.http_retry_base_delay
        last_error = None

        for attempt in range(1, attempts + 1):
            try:
                resp = self.session.request(
                    method, url,
                    json=json, params=params, headers=self._headers(),
                    timeout=timeout or self.settings.request_timeout,
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                last_error = f"{type(e).__name__}: {e}"
            except requests.RequestException as e:
                raise MarketplaceError(
                    f"{method} {path} failed: {e}", provider=provider, dseq=dseq
                ) from e
            else:
                status = resp.status_code
                if status in unavailable_statuses:
                    raise ProviderUnavailableError(
                        provider, f"HTTP {status}: {resp.text[:300]}", dseq=dseq
                    )
                if status == 429 or status >= 500:
                    last_error = f"HTTP {status}: {resp.text[:300]}"
                elif status >= 400:
                    raise MarketplaceRequestError(
                        f"{method} {path} rejected ({status}): {resp.text[:300]}",
                        status, provider=provider, dseq=dseq,
                    )
                else:
                    return resp

            if attempt < attempts:
                delay = base_delay * 2 ** (attempt - 1)
                log.warning(
                    "Marketplace %s %s transient failure (%s), retry %d/%d in %.1fs",
                    method, path, last_error, attempt, attempts - 1, delay,
                )
                self._sleep(delay)

        raise TransientTransportError(
            f"{method} {path} failed after {attempts} attempt(s): {last_error}",
            provider=provider, dseq=dseq,
        )

    @staticmethod
    def _json(resp, what):
        try:
            return resp.json()
        except ValueError:
            raise MarketplaceProtocolError(f"Invalid {what} response: body is not JSON")

    # ── Certificates ──

    def ensure_certificate(self) -> bool:
        """Make sure the account has a client certificate. 409 means it already does."""
        try:
            self._request("POST", "/v1/certificates", json={})
        except MarketplaceRequestError as e:
            if e.status_code == 409:
                log.info("Marketplace client certificate already exists")
                return True
            raise CertificateError(f"Failed to create certificate: {e.message}") from e
        except MarketplaceError as e:
            raise CertificateError(f"Failed to create certificate: {e.message}") from e
        return True

    # ── Deployments ──

    def create_deployment(self, manifest, deposit_usd=None):
        """Publish a manifest. Returns (dseq, acknowledged manifest)."""
        deposit = self.settings.deposit_usd if deposit_usd is None else deposit_usd
        if deposit < MIN_DEPOSIT_USD:
            raise ValidationError("deposit", f"must be at least ${MIN_DEPOSIT_USD:.0f} USD")

        resp = self._request(
            "POST", "/v1/deployments",
            json={"data": {"sdl": manifest, "deposit": deposit}},
        )
        data = (self._json(resp, "deployment") or {}).get("data") or {}
        dseq, ack = data.get("dseq"), data.get("manifest")
        if not dseq or not ack:
            raise MarketplaceProtocolError("Invalid deployment response: missing dseq or manifest")
        log.info("Marketplace deployment created: dseq=%s", dseq)
        return str(dseq), ack

    def get_deployment(self, dseq):
        try:
            resp = self._request("GET", f"/v1/deployments/{dseq}", dseq=dseq)
        except MarketplaceRequestError as e:
            if e.status_code == 404:
                return None
            raise
        return self._json(resp, "deployment")

    def close_deployment(self, dseq) -> bool:
        """Close a deployment so the remaining escrow deposit is returned."""
        self._request("DELETE", f"/v1/deployments/{dseq}", dseq=dseq)
        log.info("Marketplace deployment %s closed", dseq)
        return True

    # ── Bids ──

    def list_bids(self, dseq, poll_interval=None, max_attempts=None, timeout=None):
        """Collect bids for a deployment.

        Polls every poll_interval seconds until max_attempts polls have been
        made or timeout seconds have elapsed, whichever comes first. Distinct
        bids accumulate in arrival order. Once bids have arrived, a poll that
        brings nothing new ends the window early. An empty result is not an
        error here.
        """
        s = self.settings
        poll_interval = s.bid_poll_interval if poll_interval is None else poll_interval
        max_attempts = s.bid_poll_max_attempts if max_attempts is None else max_attempts
        timeout = s.bid_poll_timeout if timeout is None else timeout

        deadline = self._clock() + timeout
        seen = {}
        polls = 0

        while polls < max_attempts:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            polls += 1
            new = 0

            try:
                resp = self._request(
                    "GET", "/v1/bids", params={"dseq": dseq}, max_attempts=1,
                    timeout=min(s.request_timeout, remaining), dseq=dseq,
                )
                entries = (self._json(resp, "bids") or {}).get("data") or []
            except (TransientTransportError, MarketplaceProtocolError) as e:
                log.warning("Bid poll %d/%d for dseq=%s failed: %s",
                            polls, max_attempts, dseq, e)
                entries = []

            for entry in entries:
                try:
                    bid = Bid.from_api(entry, order=len(seen))
                except MarketplaceProtocolError as e:
                    log.warning("Skipping malformed bid for dseq=%s: %s", dseq, e)
                    continue
                if bid.state in CLOSED_BID_STATES or bid.key in seen:
                    continue
                seen[bid.key] = bid
                new += 1

            log.debug("Bid poll %d/%d for dseq=%s: %d new, %d total",
                      polls, max_attempts, dseq, new, len(seen))
            if seen and new == 0:
                break
            if polls >= max_attempts:
                break
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(poll_interval, remaining))

        bids = list(seen.values())
        log.info("Collected %d bid(s) for dseq=%s after %d poll(s)", len(bids), dseq, polls)
        return bids

    # ── Leases ──

    def create_lease(self, ack_manifest, dseq, bid: Bid) -> Lease:
        resp = self._request(
            "POST", "/v1/leases",
            json={
                "manifest": ack_manifest,
                "leases": [{
                    "dseq": dseq,
                    "gseq": bid.gseq,
                    "oseq": bid.oseq,
                    "provider": bid.provider,
                }],
            },
            provider=bid.provider, dseq=dseq,
            unavailable_statuses=PROVIDER_UNAVAILABLE_STATUSES,
        )
        data = (self._json(resp, "lease") or {}).get("data") or {}
        leases = data.get("leases") or []
        if not leases:
            raise MarketplaceProtocolError(
                "Invalid lease response: no leases created",
                provider=bid.provider, dseq=dseq,
            )
        lease = leases[0]
        lease_id = lease.get("id") or {}
        return Lease(
            dseq=str(lease_id.get("dseq", dseq)),
            gseq=int(lease_id.get("gseq", bid.gseq)),
            oseq=int(lease_id.get("oseq", bid.oseq)),
            provider=lease_id.get("provider", bid.provider),
            state=lease.get("state", "active"),
            service_url=_extract_service_url(lease),
        )
