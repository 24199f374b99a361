# GoClaw Deployment Orchestrator
# Drives one paid deployment record from pending to active or failed.
#
#   1. load record            missing → log, return
#   2. CAS pending→deploying  lost    → return, no side effects
#   3. decrypt credentials
#   4. render manifest
#   5. certificate + marketplace deployment (dseq persisted at once)
#   6. collect bids           none    → failed "no bids received"
#   7. rank, negotiate lease, resolve URL → active
#
# Whatever happens in 3-7, the finally block leaves the record terminal.
# Outcomes are visible only on the record and in the event log.

import logging
import time

from bidding import rank_bids
from blacklist import get_blacklist
from config import MarketplaceSettings
from deployments import DeploymentStatus, get_repository
from errors import AllProvidersFailedError, GoclawError, NoBidsError
from events import EventType, get_event_store
from manifest import ManifestParams, ManifestSecrets, render_manifest
from marketplace import MarketplaceClient
from negotiator import LeaseNegotiator
from vault import get_vault

log = logging.getLogger("goclaw")

INTERRUPTED_MESSAGE = "deployment interrupted before completion"


class DeploymentOrchestrator:
    """Provisioning runs for deployment records.

    Building one checks the service's own marketplace credentials, so a
    misconfigured process fails at startup instead of failing every record.
    """

    def __init__(self, settings: MarketplaceSettings = None, repository=None,
                 vault=None, blacklist=None, client=None, events=None,
                 manifest_params: ManifestParams = None, sleep=time.sleep):
        self.settings = settings or MarketplaceSettings.from_env()
        self.settings.require_api_key()
        self.repository = repository or get_repository()
        self.vault = vault or get_vault()
        self.blacklist = blacklist or get_blacklist()
        self.client = client or MarketplaceClient(self.settings, sleep=sleep)
        self.events = events if events is not None else get_event_store()
        self.manifest_params = manifest_params or ManifestParams()
        self._sleep = sleep

    def _event(self, event_type, deployment_id, **data):
        try:
            self.events.record(event_type, "deployment", deployment_id, **data)
        except Exception as e:
            log.error("Failed to record %s for deployment %s: %s",
                      event_type, deployment_id, e)

    # ── Entry point ──

    def process(self, deployment_id) -> None:
        record = self.repository.get(deployment_id)
        if record is None:
            log.error("Deployment %s not found, nothing to process", deployment_id)
            return
        if record.status != DeploymentStatus.PENDING.value:
            log.info("Deployment %s is %s, skipping duplicate trigger",
                     deployment_id, record.status)
            return
        if not self.repository.compare_and_set_status(
            deployment_id, DeploymentStatus.PENDING, DeploymentStatus.DEPLOYING
        ):
            log.info("Deployment %s already claimed by another run", deployment_id)
            return

        self._event(EventType.DEPLOYMENT_DEPLOYING, deployment_id)
        log.info("Deployment %s: provisioning started", deployment_id)

        outcome = None
        error_message = INTERRUPTED_MESSAGE
        dseq = None
        try:
            dseq, outcome = self._provision(record)
        except GoclawError as e:
            error_message = e.message
            dseq = dseq or getattr(e, "dseq", None)
            log.error("Deployment %s failed: %s", deployment_id, e.message)
        except Exception as e:
            error_message = f"Unexpected error: {e}"
            log.exception("Deployment %s failed unexpectedly", deployment_id)
        finally:
            if outcome is not None:
                self._finish_active(deployment_id, outcome)
            else:
                dseq = dseq or self._persisted_dseq(deployment_id)
                self._finish_failed(deployment_id, error_message, dseq)

    # ── Steps ──

    def _provision(self, record):
        """Steps 3-7. Returns (dseq, fields for the active write)."""
        channel_token = self.vault.decrypt(record.channel_token)
        if record.channel_api_key:
            # Not rendered into the manifest; must still decrypt.
            self.vault.decrypt(record.channel_api_key)
        secrets = ManifestSecrets(
            channel=record.channel,
            channel_token=channel_token,
            gateway_token=self.settings.gateway_token,
            inference_api_key=self.settings.inference_api_key,
            model=record.model,
        )
        manifest = render_manifest(secrets, self.manifest_params)

        self.client.ensure_certificate()
        dseq, ack_manifest = self.client.create_deployment(manifest, self.settings.deposit_usd)
        self.repository.update(record.id, marketplace_deployment_id=dseq)
        self._event(EventType.MARKETPLACE_DEPLOYMENT_CREATED, record.id, dseq=dseq)

        try:
            bids = self.client.list_bids(
                dseq,
                poll_interval=self.settings.bid_poll_interval,
                max_attempts=self.settings.bid_poll_max_attempts,
                timeout=self.settings.bid_poll_timeout,
            )
            self._event(
                EventType.MARKETPLACE_BIDS_RECEIVED, record.id, dseq=dseq,
                bids=[{"provider": b.provider, "amount": b.amount, "denom": b.denom}
                      for b in bids],
            )
            if not bids:
                raise NoBidsError(dseq=dseq)

            ranked = rank_bids(bids, self.blacklist)
            if not ranked:
                raise AllProvidersFailedError(
                    [b.provider for b in bids],
                    "All available providers are blacklisted",
                    dseq=dseq,
                )

            negotiator = LeaseNegotiator(
                self.client, self.blacklist, self.settings,
                sleep=self._sleep, events=self.events, deployment_id=record.id,
            )
            lease = negotiator.negotiate(ack_manifest, dseq, ranked)
        except GoclawError as e:
            if e.dseq is None:
                e.dseq = dseq
            raise

        self._event(EventType.LEASE_CREATED, record.id, dseq=dseq,
                    lease_id=lease.lease_id, provider=lease.provider)
        service_url = lease.service_url or f"{self.settings.console_url}/deployments/{dseq}"
        return dseq, {
            "marketplace_deployment_id": dseq,
            "lease_id": lease.lease_id,
            "provider": lease.provider,
            "service_url": service_url,
        }

    # ── Terminal writes ──

    def _finish_active(self, deployment_id, fields):
        if self.repository.compare_and_set_status(
            deployment_id, DeploymentStatus.DEPLOYING, DeploymentStatus.ACTIVE, **fields
        ):
            self._event(EventType.DEPLOYMENT_ACTIVE, deployment_id,
                        provider=fields["provider"], lease_id=fields["lease_id"],
                        service_url=fields["service_url"])
            log.info("Deployment %s active at %s", deployment_id, fields["service_url"])
        else:
            log.error("Deployment %s left deploying before it could be marked active",
                      deployment_id)
            if self.settings.close_on_failure:
                self._close_quietly(deployment_id, fields["marketplace_deployment_id"])

    def _finish_failed(self, deployment_id, message, dseq):
        message = (message or "").strip() or INTERRUPTED_MESSAGE
        if self.repository.compare_and_set_status(
            deployment_id, DeploymentStatus.DEPLOYING, DeploymentStatus.FAILED,
            error_message=message,
        ):
            self._event(EventType.DEPLOYMENT_FAILED, deployment_id,
                        error=message, dseq=dseq)
        if dseq and self.settings.close_on_failure:
            self._close_quietly(deployment_id, dseq)

    def _close_quietly(self, deployment_id, dseq):
        try:
            self.client.close_deployment(dseq)
        except Exception as e:
            log.warning("Could not close marketplace deployment %s for %s: %s",
                        dseq, deployment_id, e)
            return
        self._event(EventType.MARKETPLACE_DEPLOYMENT_CLOSED, deployment_id, dseq=dseq)

    def _persisted_dseq(self, deployment_id):
        try:
            record = self.repository.get(deployment_id)
        except Exception:
            log.exception("Could not reload deployment %s", deployment_id)
            return None
        return record.marketplace_deployment_id if record else None

    # ── Maintenance ──

    def fail_stale_deployments(self, older_than_sec=900):
        """Fail records stuck in deploying, e.g. after a process crash.

        Returns the ids that were moved to failed.
        """
        failed = []
        for record in self.repository.list_stale(DeploymentStatus.DEPLOYING, older_than_sec):
            if self.repository.compare_and_set_status(
                record.id, DeploymentStatus.DEPLOYING, DeploymentStatus.FAILED,
                error_message=INTERRUPTED_MESSAGE,
            ):
                self._event(EventType.DEPLOYMENT_FAILED, record.id,
                            error=INTERRUPTED_MESSAGE,
                            dseq=record.marketplace_deployment_id, stale=True)
                log.warning("Deployment %s stuck in deploying, marked failed", record.id)
                failed.append(record.id)
        return failed
