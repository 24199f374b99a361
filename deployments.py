# GoClaw Deployment Records
# One row per provisioning attempt, and the repository that guards its state machine.
#
#   pending ──CAS──▶ deploying ──▶ active   (service_url set)
#                              └─▶ failed   (error_message set)
#
# Terminal states have no outgoing transitions. The pending → deploying flip is
# a single conditional UPDATE so duplicate webhook deliveries cannot both win.

import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Optional

from db import DEPLOYMENT_COLUMNS, get_engine
from errors import ValidationError
from manifest import SUPPORTED_CHANNELS, SUPPORTED_MODELS

log = logging.getLogger("goclaw")


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    ACTIVE = "active"
    FAILED = "failed"


VALID_TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.DEPLOYING},
    DeploymentStatus.DEPLOYING: {DeploymentStatus.ACTIVE, DeploymentStatus.FAILED},
    DeploymentStatus.ACTIVE: set(),
    DeploymentStatus.FAILED: set(),
}

TERMINAL_STATUSES = {DeploymentStatus.ACTIVE, DeploymentStatus.FAILED}

IMMUTABLE_FIELDS = {"id", "user_id", "created_at"}


@dataclass
class DeploymentRecord:
    id: str
    user_id: str
    model: str
    channel: str
    channel_token: str
    email: Optional[str] = None
    channel_api_key: Optional[str] = None
    payment_provider: str = "stripe"
    stripe_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    marketplace_deployment_id: Optional[str] = None
    lease_id: Optional[str] = None
    provider: Optional[str] = None
    service_url: Optional[str] = None
    status: str = DeploymentStatus.PENDING.value
    error_message: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def from_row(cls, row):
        if row is None:
            return None
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in row.items() if k in known})

    @property
    def is_terminal(self):
        return self.status in {s.value for s in TERMINAL_STATUSES}

    def to_dict(self):
        return asdict(self)

    def to_public_dict(self):
        """Client-facing view. Ciphertext columns never leave the service."""
        data = self.to_dict()
        data.pop("channel_token", None)
        data.pop("channel_api_key", None)
        return data


def _check_terminal_invariants(status, merged):
    """A terminal write must carry its evidence: a URL for active, a reason for failed."""
    if status == DeploymentStatus.ACTIVE.value and not merged.get("service_url"):
        raise ValueError("active deployments require a service_url")
    if status == DeploymentStatus.FAILED.value and not (merged.get("error_message") or "").strip():
        raise ValueError("failed deployments require a non-empty error_message")
    if status in (DeploymentStatus.PENDING.value, DeploymentStatus.DEPLOYING.value) \
            and merged.get("error_message"):
        raise ValueError(f"{status} deployments cannot carry an error_message")


class DeploymentRepository:
    """Persistence for deployment records, backed by the shared database."""

    def __init__(self, engine=None, clock=time.time):
        self._engine = engine
        self._clock = clock

    @property
    def engine(self):
        return self._engine or get_engine()

    def create(self, user_id, model, channel, channel_token, email=None,
               channel_api_key=None, stripe_session_id=None,
               payment_provider="stripe", deployment_id=None) -> DeploymentRecord:
        if not user_id:
            raise ValidationError("user_id", "user_id is required")
        if model not in SUPPORTED_MODELS:
            raise ValidationError(
                "model", f"expected one of {', '.join(SUPPORTED_MODELS)}"
            )
        if channel not in SUPPORTED_CHANNELS:
            raise ValidationError(
                "channel", f"expected one of {', '.join(SUPPORTED_CHANNELS)}"
            )
        if not channel_token:
            raise ValidationError("channel_token", "channel token is required")

        now = self._clock()
        record = DeploymentRecord(
            id=deployment_id or str(uuid.uuid4()),
            user_id=user_id,
            email=email,
            model=model,
            channel=channel,
            channel_token=channel_token,
            channel_api_key=channel_api_key,
            payment_provider=payment_provider,
            stripe_session_id=stripe_session_id,
            created_at=now,
            updated_at=now,
        )
        with self.engine.transaction() as (conn, backend):
            self.engine.ops.insert_deployment(conn, record.to_dict(), backend=backend)
        log.info("Deployment %s created for user %s (%s/%s)",
                 record.id, user_id, channel, model)
        return record

    def get(self, deployment_id) -> Optional[DeploymentRecord]:
        with self.engine.connection() as (conn, backend):
            row = self.engine.ops.get_deployment(conn, deployment_id, backend=backend)
        return DeploymentRecord.from_row(row)

    def find_by_stripe_session(self, session_id) -> Optional[DeploymentRecord]:
        if not session_id:
            return None
        with self.engine.connection() as (conn, backend):
            row = self.engine.ops.find_deployment_by_session(conn, session_id, backend=backend)
        return DeploymentRecord.from_row(row)

    def list_by_user(self, user_id, limit=50):
        with self.engine.connection() as (conn, backend):
            rows = self.engine.ops.list_deployments_by_user(
                conn, user_id, limit=limit, backend=backend
            )
        return [DeploymentRecord.from_row(r) for r in rows]

    def list_stale(self, status=DeploymentStatus.DEPLOYING, older_than_sec=900):
        """Records sitting in `status` with no write for older_than_sec."""
        cutoff = self._clock() - older_than_sec
        with self.engine.connection() as (conn, backend):
            rows = self.engine.ops.list_deployments_by_status(
                conn, DeploymentStatus(status).value, cutoff, backend=backend
            )
        return [DeploymentRecord.from_row(r) for r in rows]

    def compare_and_set_status(self, deployment_id, expected, next_status, **extra) -> bool:
        """Atomically move a record from `expected` to `next_status`.

        Returns False when the record is missing or no longer in `expected`;
        the row is untouched in that case.
        """
        expected = DeploymentStatus(expected)
        next_status = DeploymentStatus(next_status)
        if next_status not in VALID_TRANSITIONS[expected]:
            raise ValueError(
                f"Invalid transition {expected.value} -> {next_status.value}"
            )
        self._reject_immutable(extra)

        values = dict(extra)
        values["status"] = next_status.value
        if next_status in (DeploymentStatus.PENDING, DeploymentStatus.DEPLOYING):
            values.setdefault("error_message", None)
        values["updated_at"] = self._clock()

        with self.engine.transaction() as (conn, backend):
            if next_status in TERMINAL_STATUSES:
                current = self.engine.ops.get_deployment(conn, deployment_id, backend=backend)
                if current is None or current["status"] != expected.value:
                    return False
                merged = dict(current)
                merged.update(values)
                _check_terminal_invariants(next_status.value, merged)
            changed = self.engine.ops.update_deployment(
                conn, deployment_id, values,
                expected_status=expected.value, backend=backend,
            )

        if changed:
            log.info("Deployment %s: %s -> %s", deployment_id, expected.value, next_status.value)
        return changed == 1

    def update(self, deployment_id, **changes) -> Optional[DeploymentRecord]:
        """Write non-status fields. Status moves only through compare_and_set_status."""
        self._reject_immutable(changes)
        if "status" in changes:
            raise ValueError("status changes must go through compare_and_set_status")
        if "stripe_session_id" in changes:
            current = self.get(deployment_id)
            if current and current.stripe_session_id \
                    and current.stripe_session_id != changes["stripe_session_id"]:
                raise ValueError("stripe_session_id is immutable once set")
        if not changes:
            return self.get(deployment_id)

        values = dict(changes)
        values["updated_at"] = self._clock()
        with self.engine.transaction() as (conn, backend):
            self.engine.ops.update_deployment(conn, deployment_id, values, backend=backend)
        return self.get(deployment_id)

    @staticmethod
    def _reject_immutable(changes):
        unknown = set(changes) - set(DEPLOYMENT_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown deployment fields: {', '.join(sorted(unknown))}")
        blocked = IMMUTABLE_FIELDS & set(changes)
        if blocked:
            raise ValueError(f"Immutable fields cannot be updated: {', '.join(sorted(blocked))}")


# ── Singleton ─────────────────────────────────────────────────────────

_repo = None
_repo_lock = threading.Lock()


def get_repository():
    global _repo
    if _repo is not None:
        return _repo
    with _repo_lock:
        if _repo is None:
            _repo = DeploymentRepository()
        return _repo
