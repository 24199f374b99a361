# GoClaw Background Worker
# Runs orchestration off the request path and keeps the blacklist tidy.
#
# The webhook handler only calls DeploymentDispatcher.submit(); the run itself
# happens on a pool thread. Duplicate submissions for the same record are safe:
# the pending → deploying compare-and-set lets exactly one of them proceed.

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

log = logging.getLogger("goclaw")

MAX_CONCURRENT_DEPLOYMENTS = int(os.environ.get("GOCLAW_MAX_CONCURRENT_DEPLOYMENTS", "4"))
BLACKLIST_CLEANUP_INTERVAL_SEC = float(os.environ.get("GOCLAW_BLACKLIST_CLEANUP_INTERVAL_SEC", "300"))


class DeploymentDispatcher:
    """Thread pool handoff for orchestration runs.

    `orchestrator_factory` is called lazily on the first submit so the API can
    start without marketplace credentials and report the problem per call.
    """

    def __init__(self, orchestrator_factory, max_workers=MAX_CONCURRENT_DEPLOYMENTS):
        self._factory = orchestrator_factory
        self._orchestrator = None
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="deploy",
        )
        self._inflight = {}

    def _get_orchestrator(self):
        with self._lock:
            if self._orchestrator is None:
                self._orchestrator = self._factory()
            return self._orchestrator

    def submit(self, deployment_id):
        """Queue process(deployment_id). Returns the Future immediately."""
        orchestrator = self._get_orchestrator()
        future = self._executor.submit(orchestrator.process, deployment_id)
        with self._lock:
            self._inflight[future] = deployment_id
        future.add_done_callback(self._on_done)
        log.info("Deployment %s queued for provisioning", deployment_id)
        return future

    def _on_done(self, future):
        with self._lock:
            deployment_id = self._inflight.pop(future, "?")
        if future.cancelled():
            log.warning("Provisioning of %s was cancelled", deployment_id)
            return
        exc = future.exception()
        if exc is not None:
            log.error("Provisioning of %s raised %s: %s",
                      deployment_id, type(exc).__name__, exc,
                      exc_info=(type(exc), exc, exc.__traceback__))

    @property
    def inflight(self):
        with self._lock:
            return sorted(self._inflight.values())

    def shutdown(self, wait=True):
        self._executor.shutdown(wait=wait)


def start_blacklist_janitor(blacklist, interval=BLACKLIST_CLEANUP_INTERVAL_SEC,
                            stop_event: Optional[threading.Event] = None):
    """Daemon thread that prunes expired blacklist entries until stop_event is set.

    Returns (thread, stop_event).
    """
    stop_event = stop_event or threading.Event()

    def _janitor_loop():
        while not stop_event.is_set():
            try:
                blacklist.cleanup_expired()
            except Exception as e:
                log.error("Blacklist cleanup failed: %s", e)
            stop_event.wait(interval)

    thread = threading.Thread(target=_janitor_loop, name="blacklist-janitor", daemon=True)
    thread.start()
    return thread, stop_event


# ── Singleton ─────────────────────────────────────────────────────────

_dispatcher: Optional[DeploymentDispatcher] = None
_dispatcher_lock = threading.Lock()


def _default_orchestrator():
    from orchestrator import DeploymentOrchestrator
    return DeploymentOrchestrator()


def get_dispatcher() -> DeploymentDispatcher:
    global _dispatcher
    if _dispatcher is not None:
        return _dispatcher
    with _dispatcher_lock:
        if _dispatcher is None:
            _dispatcher = DeploymentDispatcher(_default_orchestrator)
        return _dispatcher
