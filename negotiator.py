# GoClaw Lease Negotiator
# Walks ranked bids until a provider accepts the lease.
#
#   ProviderUnavailableError → blacklist provider for the cooldown, next bid
#   other MarketplaceError   → back off base * 2**attempt, retry same bid,
#                              give up on it after lease_max_retries attempts
#   bids exhausted           → AllProvidersFailedError(attempted, last_error)

import logging
import time

from config import MarketplaceSettings
from errors import AllProvidersFailedError, MarketplaceError, ProviderUnavailableError
from events import EventType

log = logging.getLogger("goclaw")


class LeaseNegotiator:
    def __init__(self, client, blacklist, settings: MarketplaceSettings = None,
                 sleep=time.sleep, events=None, deployment_id=None):
        self.client = client
        self.blacklist = blacklist
        self.settings = settings or client.settings
        self._sleep = sleep
        self.events = events
        self.deployment_id = deployment_id

    def negotiate(self, ack_manifest, dseq, ranked_bids):
        """Return the first Lease any provider grants, in ranked order."""
        attempted = []
        blacklisted = set()
        last_error = None
        max_retries = max(1, self.settings.lease_max_retries)
        base_delay = self.settings.lease_retry_base_delay

        for index, bid in enumerate(ranked_bids, start=1):
            if bid.provider in blacklisted:
                log.info("Skipping bid %d/%d: provider %s blacklisted during this run",
                         index, len(ranked_bids), bid.provider)
                continue
            if bid.provider not in attempted:
                attempted.append(bid.provider)
            log.info("Trying provider %d/%d: %s (price: %s %s)",
                     index, len(ranked_bids), bid.provider, bid.amount, bid.denom)

            for attempt in range(max_retries):
                try:
                    lease = self.client.create_lease(ack_manifest, dseq, bid)
                except ProviderUnavailableError as e:
                    last_error = e
                    self._blacklist(bid.provider, e, dseq)
                    blacklisted.add(bid.provider)
                    break
                except MarketplaceError as e:
                    last_error = e
                    if attempt + 1 >= max_retries:
                        log.warning("Provider %s failed %d lease attempt(s), moving on: %s",
                                    bid.provider, max_retries, e)
                        break
                    delay = base_delay * 2 ** attempt
                    log.warning("Lease attempt %d/%d with %s failed (%s), retrying in %.1fs",
                                attempt + 1, max_retries, bid.provider, e, delay)
                    self._sleep(delay)
                else:
                    log.info("Lease %s created with provider %s", lease.lease_id, bid.provider)
                    return lease

        raise AllProvidersFailedError(
            attempted,
            last_error.message if last_error else "no eligible bids",
            dseq=dseq,
        )

    def _blacklist(self, provider, error, dseq):
        cooldown = self.settings.blacklist_cooldown
        reason = f"Lease rejected for dseq {dseq}: {error.message}"
        entry = self.blacklist.add_for(provider, reason, cooldown)
        log.warning("Provider %s unavailable, blacklisted until %.0f; trying next bid",
                    provider, entry.expires_at)
        if self.events is None or not self.deployment_id:
            return
        try:
            self.events.record(
                EventType.PROVIDER_BLACKLISTED, "deployment", self.deployment_id,
                provider=provider, dseq=dseq, cooldown_sec=cooldown,
            )
        except Exception as e:
            log.error("Failed to record blacklisting of %s for deployment %s: %s",
                      provider, self.deployment_id, e)
