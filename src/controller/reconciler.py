"""Reconcile loop for the IntrusionDetection resource.

Each pass walks Gating -> Resolving -> Composing -> Applying and ends in one of
the terminal states below. Deferred and license outcomes return a result;
fatal outcomes raise ReconcileError so the dispatcher backs off.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from src.applier.applier import CREATED, UPDATED, Applier, apply_and_report
from src.cluster.store import NotFoundError, ObjectStore, StoreError
from src.common import names
from src.common.errors import ApplyError, DeferredPrecondition, FatalPrecondition, ReconcileError
from src.common.readiness import ReadyFlag
from src.common.resources import fill_component_defaults, validate_component_resources
from src.render import compose
from src.resolver.preconditions import PreconditionResolver
from src.status.manager import StatusSink

logger = logging.getLogger(__name__)

FEATURE_NOT_ACTIVE = "Feature is not active"
FEATURE_NOT_ACTIVE_MESSAGE = "License does not support this feature"


class ReconcileState(str, Enum):
    IDLE = "Idle"
    GATING = "Gating"
    RESOLVING = "Resolving"
    COMPOSING = "Composing"
    APPLYING = "Applying"
    HEALTHY = "Healthy"
    DEGRADED_DEFERRED = "Degraded-Deferred"
    DEGRADED_FATAL = "Degraded-Fatal"
    FEATURE_INACTIVE = "Feature-Inactive"


@dataclass(frozen=True)
class ReconcileResult:
    requeue_after: float = 0.0
    state: ReconcileState = ReconcileState.HEALTHY


class IntrusionDetectionReconciler:
    def __init__(
        self,
        store: ObjectStore,
        status: StatusSink,
        license_api_ready: ReadyFlag,
        dpi_api_ready: ReadyFlag,
        *,
        resolver: Optional[PreconditionResolver] = None,
        applier: Optional[Applier] = None,
    ) -> None:
        self.store = store
        self.status = status
        self.license_api_ready = license_api_ready
        self.dpi_api_ready = dpi_api_ready
        self.resolver = resolver or PreconditionResolver(store)
        self.applier = applier or Applier(store)
        self.states: List[ReconcileState] = []

    @property
    def last_state(self) -> Optional[ReconcileState]:
        return self.states[-1] if self.states else None

    def _enter(self, state: ReconcileState) -> None:
        self.states.append(state)

    def reconcile(self, request: Optional[str] = None) -> ReconcileResult:
        self.states = [ReconcileState.IDLE]
        logger.debug("Reconciling IntrusionDetection (trigger=%s)", request or "resync")

        intrusion_detection = self._owned_resource()
        if intrusion_detection is None:
            logger.info("IntrusionDetection %s not found; nothing to do", names.INTRUSION_DETECTION_NAME)
            return ReconcileResult(state=ReconcileState.IDLE)

        self._enter(ReconcileState.GATING)
        if not self.license_api_ready.is_ready():
            return self._defer(DeferredPrecondition("Waiting for LicenseKeyAPI to be ready"))
        if not self.dpi_api_ready.is_ready():
            return self._defer(DeferredPrecondition("Waiting for DeepPacketInspection API to be ready"))

        self._enter(ReconcileState.RESOLVING)
        problems = validate_component_resources(intrusion_detection)
        if problems:
            self._fail(FatalPrecondition("Invalid IntrusionDetection resource", "; ".join(problems)))
        intrusion_detection = self._persist_defaults(intrusion_detection)

        try:
            ctx = self.resolver.resolve(intrusion_detection)
        except DeferredPrecondition as exc:
            return self._defer(exc)
        except FatalPrecondition as exc:
            self._fail(exc)

        self._enter(ReconcileState.COMPOSING)
        desired = compose(ctx)

        self._enter(ReconcileState.APPLYING)
        if not ctx.feature_active:
            self.status.set_degraded(FEATURE_NOT_ACTIVE, FEATURE_NOT_ACTIVE_MESSAGE)
        try:
            report = apply_and_report(
                self.store,
                desired,
                self.status,
                clear_on_success=ctx.feature_active,
                applier=self.applier,
            )
        except ApplyError as exc:
            self._enter(ReconcileState.DEGRADED_FATAL)
            key, cause = exc.first
            raise ReconcileError(f"Error creating or updating {key}", str(cause), exc) from exc

        if not ctx.feature_active:
            self._enter(ReconcileState.FEATURE_INACTIVE)
            logger.info("Intrusion detection is not licensed; nothing rendered")
            return ReconcileResult(state=ReconcileState.FEATURE_INACTIVE)

        self._enter(ReconcileState.HEALTHY)
        logger.info(
            "Reconciled IntrusionDetection: %d object(s), %d created, %d updated",
            len(desired),
            len(report.keys_with(CREATED)),
            len(report.keys_with(UPDATED)),
        )
        return ReconcileResult(state=ReconcileState.HEALTHY)

    def _owned_resource(self) -> Optional[Dict[str, Any]]:
        try:
            return self.store.get(
                names.OPERATOR_API_VERSION, names.INTRUSION_DETECTION_KIND, None, names.INTRUSION_DETECTION_NAME
            )
        except NotFoundError:
            return None
        except StoreError as exc:
            self._fail(FatalPrecondition("Error querying IntrusionDetection", str(exc)))

    def _persist_defaults(self, intrusion_detection: Dict[str, Any]) -> Dict[str, Any]:
        """Write filled-in component defaults back before anything is composed."""

        if not fill_component_defaults(intrusion_detection):
            return intrusion_detection
        try:
            updated = self.store.update(intrusion_detection)
        except StoreError as exc:
            self._fail(FatalPrecondition("Failed to write defaults", str(exc)))
        logger.info("Persisted default component resources on IntrusionDetection %s", names.INTRUSION_DETECTION_NAME)
        return updated

    def _defer(self, exc: DeferredPrecondition) -> ReconcileResult:
        self._enter(ReconcileState.DEGRADED_DEFERRED)
        self.status.set_degraded(exc.reason, exc.message)
        logger.info("Deferred: %s %s", exc.reason, exc.message)
        return ReconcileResult(requeue_after=exc.requeue_after, state=ReconcileState.DEGRADED_DEFERRED)

    def _fail(self, exc: FatalPrecondition) -> None:
        self._enter(ReconcileState.DEGRADED_FATAL)
        self.status.set_degraded(exc.reason, exc.message)
        raise ReconcileError(exc.reason, exc.message, exc) from exc


__all__ = [
    "FEATURE_NOT_ACTIVE",
    "FEATURE_NOT_ACTIVE_MESSAGE",
    "IntrusionDetectionReconciler",
    "ReconcileResult",
    "ReconcileState",
]
