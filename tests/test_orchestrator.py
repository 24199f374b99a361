"""End-to-end orchestration tests against a scripted marketplace.

Storage, blacklist, vault and event log are the real implementations on temp
SQLite files; only the marketplace and the clock are faked.
"""

import threading

import pytest

from config import MarketplaceSettings
from errors import ConfigurationError, MarketplaceError, ProviderUnavailableError
from marketplace import Bid, Lease
from orchestrator import INTERRUPTED_MESSAGE, DeploymentOrchestrator

TELEGRAM_TOKEN = "123456789:AAH-test_token_value"


def _bid(provider, amount, order):
    return Bid(provider=provider, amount=amount, denom="uakt", dseq="100", order=order)


def _lease(provider, url=None):
    return Lease(dseq="100", gseq=1, oseq=1, provider=provider, service_url=url)


class FakeMarketplace:
    """Duck-typed MarketplaceClient with call counters."""

    def __init__(self, bids=(), leases=None, bids_error=None, close_error=None):
        self.bids = list(bids)
        self.leases = {p: list(o) for p, o in (leases or {}).items()}
        self.bids_error = bids_error
        self.close_error = close_error
        self.manifests = []
        self.lease_calls = []
        self.closed = []
        self.certificates = 0
        self._lock = threading.Lock()

    def ensure_certificate(self):
        self.certificates += 1
        return True

    def create_deployment(self, manifest, deposit_usd=None):
        with self._lock:
            self.manifests.append(manifest)
        return "100", "ack-manifest"

    def list_bids(self, dseq, poll_interval=None, max_attempts=None, timeout=None):
        if self.bids_error is not None:
            raise self.bids_error
        return list(self.bids)

    def create_lease(self, ack_manifest, dseq, bid):
        self.lease_calls.append(bid.provider)
        outcome = self.leases[bid.provider].pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def close_deployment(self, dseq):
        if self.close_error is not None:
            raise self.close_error
        self.closed.append(dseq)
        return True


THREE_BIDS = [_bid("A", "3.0", 0), _bid("B", "1.0", 1), _bid("C", "2.0", 2)]


@pytest.fixture
def settings():
    return MarketplaceSettings(
        api_key="test-key",
        inference_api_key="inference-key",
        lease_max_retries=3,
        lease_retry_base_delay=2,
        blacklist_cooldown=3600,
    )


@pytest.fixture
def make_orchestrator(settings, repo, credential_vault, provider_blacklist, event_store, clock):
    def _make(client, **overrides):
        return DeploymentOrchestrator(
            settings=overrides.pop("settings", settings),
            repository=repo,
            vault=credential_vault,
            blacklist=provider_blacklist,
            client=client,
            events=event_store,
            sleep=clock.sleep,
        )
    return _make


@pytest.fixture
def pending(repo, credential_vault):
    def _pending(token=TELEGRAM_TOKEN, channel="telegram"):
        return repo.create(
            user_id="user-1",
            model="claude-opus-4.5",
            channel=channel,
            channel_token=credential_vault.encrypt(token),
        )
    return _pending


class TestHappyPath:
    def test_failover_to_next_cheapest(self, make_orchestrator, pending, repo, provider_blacklist):
        client = FakeMarketplace(THREE_BIDS, leases={
            "B": [ProviderUnavailableError("B", "HTTP 503")],
            "C": [_lease("C", "http://c.example:31000")],
        })
        record = pending()
        make_orchestrator(client).process(record.id)

        stored = repo.get(record.id)
        assert stored.status == "active"
        assert stored.provider == "C"
        assert stored.lease_id == "100-1-1"
        assert stored.service_url == "http://c.example:31000"
        assert stored.marketplace_deployment_id == "100"
        assert stored.error_message is None
        assert client.lease_calls == ["B", "C"]
        assert provider_blacklist.blacklisted_providers() == {"B"}
        assert client.closed == []

    def test_manifest_carries_decrypted_credentials(self, make_orchestrator, pending):
        client = FakeMarketplace([_bid("C", "1", 0)], leases={"C": [_lease("C", "http://c")]})
        make_orchestrator(client).process(pending().id)
        manifest = client.manifests[0]
        assert f'"TELEGRAM_BOT_TOKEN={TELEGRAM_TOKEN}"' in manifest
        assert '"API_KEY=inference-key"' in manifest

    def test_console_url_fallback(self, make_orchestrator, pending, repo):
        client = FakeMarketplace([_bid("C", "1", 0)], leases={"C": [_lease("C")]})
        record = pending()
        make_orchestrator(client).process(record.id)
        assert repo.get(record.id).service_url == "https://console.akash.network/deployments/100"

    def test_retry_same_bid_with_backoff(self, make_orchestrator, pending, repo, clock):
        client = FakeMarketplace([_bid("C", "1", 0)], leases={"C": [
            MarketplaceError("reset"), MarketplaceError("reset"), _lease("C", "http://c"),
        ]})
        record = pending()
        make_orchestrator(client).process(record.id)
        assert repo.get(record.id).status == "active"
        assert clock.sleeps == [2.0, 4.0]

    def test_event_timeline(self, make_orchestrator, pending, event_store):
        client = FakeMarketplace(THREE_BIDS, leases={
            "B": [ProviderUnavailableError("B")],
            "C": [_lease("C", "http://c")],
        })
        record = pending()
        make_orchestrator(client).process(record.id)
        types = [e["event_type"] for e in event_store.deployment_timeline(record.id)]
        assert types == [
            "deployment.deploying",
            "marketplace.deployment_created",
            "marketplace.bids_received",
            "provider.blacklisted",
            "lease.created",
            "deployment.active",
        ]
        assert event_store.verify_chain()["valid"]


class TestIdempotency:
    def test_second_trigger_is_noop(self, make_orchestrator, pending, repo):
        client = FakeMarketplace([_bid("C", "1", 0)], leases={"C": [_lease("C", "http://c")]})
        orchestrator = make_orchestrator(client)
        record = pending()
        orchestrator.process(record.id)
        orchestrator.process(record.id)
        assert len(client.manifests) == 1
        assert repo.get(record.id).status == "active"

    def test_concurrent_triggers_single_deployment(self, settings, pending, repo,
                                                   credential_vault, provider_blacklist,
                                                   event_store):
        client = FakeMarketplace([_bid("C", "1", 0)], leases={"C": [_lease("C", "http://c")]})
        orchestrator = DeploymentOrchestrator(
            settings=settings, repository=repo, vault=credential_vault,
            blacklist=provider_blacklist, client=client, events=event_store,
            sleep=lambda _: None,
        )
        record = pending()
        barrier = threading.Barrier(4)

        def trigger():
            barrier.wait()
            orchestrator.process(record.id)

        threads = [threading.Thread(target=trigger) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(client.manifests) == 1
        assert repo.get(record.id).status == "active"

    def test_missing_record(self, make_orchestrator):
        client = FakeMarketplace()
        make_orchestrator(client).process("does-not-exist")
        assert client.manifests == []

    def test_already_failed_record_untouched(self, make_orchestrator, pending, repo):
        record = pending()
        repo.compare_and_set_status(record.id, "pending", "deploying")
        repo.compare_and_set_status(record.id, "deploying", "failed", error_message="earlier")
        client = FakeMarketplace()
        make_orchestrator(client).process(record.id)
        assert client.manifests == []
        assert repo.get(record.id).error_message == "earlier"


class TestFailures:
    def test_no_bids(self, make_orchestrator, pending, repo):
        client = FakeMarketplace([])
        record = pending()
        make_orchestrator(client).process(record.id)
        stored = repo.get(record.id)
        assert stored.status == "failed"
        assert stored.error_message == "no bids received"
        assert stored.marketplace_deployment_id == "100"
        assert stored.service_url is None
        assert client.lease_calls == []
        assert client.closed == ["100"]

    def test_all_providers_failed(self, make_orchestrator, pending, repo, provider_blacklist):
        client = FakeMarketplace(THREE_BIDS, leases={
            "A": [ProviderUnavailableError("A")],
            "B": [ProviderUnavailableError("B")],
            "C": [ProviderUnavailableError("C")],
        })
        record = pending()
        make_orchestrator(client).process(record.id)
        stored = repo.get(record.id)
        assert stored.status == "failed"
        assert stored.error_message.startswith("All 3 providers failed (attempted: B, C, A)")
        assert provider_blacklist.blacklisted_providers() == {"A", "B", "C"}

    def test_every_bid_already_blacklisted(self, make_orchestrator, pending, repo,
                                           provider_blacklist):
        provider_blacklist.add("B", "known bad")
        provider_blacklist.add("C", "known bad")
        client = FakeMarketplace([_bid("B", "1", 0), _bid("C", "2", 1)])
        record = pending()
        make_orchestrator(client).process(record.id)
        stored = repo.get(record.id)
        assert stored.status == "failed"
        assert "All available providers are blacklisted" in stored.error_message
        assert client.lease_calls == []

    def test_decryption_failure(self, make_orchestrator, repo):
        record = repo.create(user_id="u", model="gpt-3.2", channel="telegram",
                             channel_token="not:a:ciphertext")
        client = FakeMarketplace()
        make_orchestrator(client).process(record.id)
        stored = repo.get(record.id)
        assert stored.status == "failed"
        assert stored.error_message.startswith("Invalid encrypted format")
        assert client.manifests == []
        assert client.closed == []

    def test_corrupt_channel_api_key(self, make_orchestrator, repo, credential_vault):
        record = repo.create(
            user_id="u", model="gpt-3.2", channel="telegram",
            channel_token=credential_vault.encrypt(TELEGRAM_TOKEN),
            channel_api_key="deadbeef:corrupt:00",
        )
        client = FakeMarketplace([_bid("C", "2.0", 0)], leases={"C": [_lease("C")]})
        make_orchestrator(client).process(record.id)
        stored = repo.get(record.id)
        assert stored.status == "failed"
        assert stored.error_message.startswith("Invalid encrypted format")
        assert client.manifests == []

    def test_readable_channel_api_key_proceeds(self, make_orchestrator, repo, credential_vault):
        record = repo.create(
            user_id="u", model="gpt-3.2", channel="telegram",
            channel_token=credential_vault.encrypt(TELEGRAM_TOKEN),
            channel_api_key=credential_vault.encrypt("sk-channel"),
        )
        client = FakeMarketplace([_bid("C", "2.0", 0)], leases={"C": [_lease("C")]})
        make_orchestrator(client).process(record.id)
        assert repo.get(record.id).status == "active"

    def test_invalid_channel_token(self, make_orchestrator, pending, repo):
        client = FakeMarketplace()
        record = pending(token="not a telegram token")
        make_orchestrator(client).process(record.id)
        stored = repo.get(record.id)
        assert stored.status == "failed"
        assert stored.error_message.startswith("Invalid channel_token")
        assert client.certificates == 0

    def test_close_on_failure_disabled(self, make_orchestrator, pending, settings):
        from dataclasses import replace
        client = FakeMarketplace([])
        make_orchestrator(client, settings=replace(settings, close_on_failure=False)).process(
            pending().id
        )
        assert client.closed == []

    def test_close_failure_does_not_mask_outcome(self, make_orchestrator, pending, repo):
        client = FakeMarketplace([], close_error=MarketplaceError("gone"))
        record = pending()
        make_orchestrator(client).process(record.id)
        assert repo.get(record.id).error_message == "no bids received"

    def test_unexpected_exception(self, make_orchestrator, pending, repo):
        client = FakeMarketplace(bids_error=RuntimeError("boom"))
        record = pending()
        make_orchestrator(client).process(record.id)
        stored = repo.get(record.id)
        assert stored.status == "failed"
        assert stored.error_message == "Unexpected error: boom"
        assert client.closed == ["100"]

    def test_interrupted_run_still_terminal(self, make_orchestrator, pending, repo):
        client = FakeMarketplace(bids_error=KeyboardInterrupt())
        record = pending()
        with pytest.raises(KeyboardInterrupt):
            make_orchestrator(client).process(record.id)
        stored = repo.get(record.id)
        assert stored.status == "failed"
        assert stored.error_message == INTERRUPTED_MESSAGE

    def test_lease_closed_when_record_failed_concurrently(self, make_orchestrator, pending, repo):
        record = pending()

        class StaleSweepMarketplace(FakeMarketplace):
            def create_lease(self, ack_manifest, dseq, bid):
                repo.compare_and_set_status(record.id, "deploying", "failed",
                                            error_message="stale")
                return super().create_lease(ack_manifest, dseq, bid)

        client = StaleSweepMarketplace([_bid("C", "2.0", 0)], leases={"C": [_lease("C")]})
        make_orchestrator(client).process(record.id)
        stored = repo.get(record.id)
        assert stored.status == "failed"
        assert stored.error_message == "stale"
        assert client.closed == ["100"]


class TestConfiguration:
    def test_missing_api_key_fails_fast(self, repo, credential_vault, provider_blacklist,
                                        event_store):
        with pytest.raises(ConfigurationError):
            DeploymentOrchestrator(
                settings=MarketplaceSettings(api_key=""), repository=repo,
                vault=credential_vault, blacklist=provider_blacklist,
                client=FakeMarketplace(), events=event_store,
            )


class TestStaleRecovery:
    def test_fails_stuck_deploying(self, make_orchestrator, pending, repo, clock, event_store):
        stuck = pending()
        repo.compare_and_set_status(stuck.id, "pending", "deploying")
        clock.advance(1000)
        waiting = pending()

        failed = make_orchestrator(FakeMarketplace()).fail_stale_deployments(900)

        assert failed == [stuck.id]
        assert repo.get(stuck.id).status == "failed"
        assert repo.get(stuck.id).error_message == INTERRUPTED_MESSAGE
        assert repo.get(waiting.id).status == "pending"
        types = [e["event_type"] for e in event_store.deployment_timeline(stuck.id)]
        assert types == ["deployment.failed"]
