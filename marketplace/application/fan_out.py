# marketplace/application/fan_out.py

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from marketplace.domain.exceptions import AuditFailure
from marketplace.domain.side_effects import (
    FAN_OUT_ORDER,
    SideEffectDescriptor,
    SideEffectKind,
    SideEffectOutcome,
)


logger = logging.getLogger(__name__)


class AuditLogger(Protocol):
    async def log_action(
        self,
        *,
        user_id: int,
        role: str,
        action: str,
        details: dict | None = None,
        ip_address: str | None = None,
    ) -> Any:
        ...


class Notifier(Protocol):
    async def send_notification(
        self,
        *,
        user_id: int,
        notification_type: str,
        message_key: str,
        message_params: dict | None = None,
        role: str,
        module: str,
        language_code: str | None = None,
    ) -> Any:
        ...


class Broadcaster(Protocol):
    async def emit(self, channel: str, event_name: str, payload: dict) -> Any:
        ...


class PointsAwarder(Protocol):
    async def award_points(
        self,
        *,
        user_id: int,
        action: str,
        points: int,
        metadata: dict | None = None,
    ) -> Any:
        ...


@dataclass(frozen=True)
class FanOutPartialFailure:
    """
    Non-fatal side effects that failed after the domain write committed.
    The call still succeeds; these are reported as warnings.
    """

    failures: tuple[SideEffectOutcome, ...]

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[SideEffectOutcome]) -> "FanOutPartialFailure | None":
        failures = tuple(outcome for outcome in outcomes if not outcome.succeeded)
        if not failures:
            return None
        return cls(failures=failures)

    @property
    def gamification_error(self) -> str | None:
        for outcome in self.failures:
            if outcome.kind == SideEffectKind.AWARD_POINTS:
                return outcome.error
        return None

    def as_warnings(self) -> list[dict[str, str]]:
        return [
            {
                "kind": outcome.kind.value,
                "target": outcome.descriptor.target,
                "error": outcome.error or "",
            }
            for outcome in self.failures
        ]


def order_descriptors(descriptors: Iterable[SideEffectDescriptor]) -> list[SideEffectDescriptor]:
    rank = {kind: index for index, kind in enumerate(FAN_OUT_ORDER)}
    return sorted(descriptors, key=lambda descriptor: rank[descriptor.kind])


class SideEffectFanOut:
    """
    Applies side-effect descriptors against their collaborators.

    Descriptors run in the fixed order audit, notify, broadcast, points and
    each one is isolated from the others. An audit failure is escalated as
    AuditFailure and stops the remaining descriptors; every other failure is
    logged and returned as a failed outcome.
    """

    def __init__(
        self,
        audit: AuditLogger,
        notifications: Notifier,
        broadcast: Broadcaster,
        points: PointsAwarder,
    ):
        self.audit = audit
        self.notifications = notifications
        self.broadcast = broadcast
        self.points = points

    async def apply(
        self,
        descriptors: Iterable[SideEffectDescriptor],
        ip_address: str | None = None,
    ) -> list[SideEffectOutcome]:
        outcomes: list[SideEffectOutcome] = []

        for descriptor in order_descriptors(descriptors):
            try:
                result = await self._dispatch(descriptor, ip_address)
            except Exception as exc:
                if descriptor.kind == SideEffectKind.AUDIT:
                    logger.error(
                        "Audit log failed after commit. target=%s action=%s error=%s",
                        descriptor.target,
                        descriptor.payload.get("action"),
                        exc,
                    )
                    raise AuditFailure(
                        f"Audit log failed: {exc}",
                        details={
                            "committed": True,
                            "action": descriptor.payload.get("action"),
                        },
                    ) from exc

                logger.warning(
                    "Side effect failed. kind=%s target=%s error=%s",
                    descriptor.kind.value,
                    descriptor.target,
                    exc,
                )
                outcomes.append(
                    SideEffectOutcome(descriptor=descriptor, succeeded=False, error=str(exc))
                )
                continue

            outcomes.append(SideEffectOutcome(descriptor=descriptor, succeeded=True, result=result))

        return outcomes

    async def _dispatch(self, descriptor: SideEffectDescriptor, ip_address: str | None) -> Any:
        payload = descriptor.payload

        if descriptor.kind == SideEffectKind.AUDIT:
            return await self.audit.log_action(
                user_id=payload["user_id"],
                role=payload["role"],
                action=payload["action"],
                details=payload["details"],
                ip_address=ip_address,
            )
        if descriptor.kind == SideEffectKind.NOTIFY:
            return await self.notifications.send_notification(
                user_id=payload["user_id"],
                notification_type=payload["notification_type"],
                message_key=payload["message_key"],
                message_params=payload["message_params"],
                role=payload["role"],
                module=payload["module"],
                language_code=payload["language_code"],
            )
        if descriptor.kind == SideEffectKind.BROADCAST:
            return await self.broadcast.emit(
                descriptor.target,
                payload["event_name"],
                payload["payload"],
            )
        if descriptor.kind == SideEffectKind.AWARD_POINTS:
            return await self.points.award_points(
                user_id=payload["user_id"],
                action=payload["action"],
                points=payload["points"],
                metadata=payload["metadata"],
            )
        raise ValueError(f"Unsupported side effect kind: {descriptor.kind}")
