# marketplace/domain/side_effects.py

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SideEffectKind(str, Enum):
    AUDIT = "audit"
    NOTIFY = "notify"
    BROADCAST = "broadcast"
    AWARD_POINTS = "award_points"


# Points run last: they are best-effort.
FAN_OUT_ORDER: tuple[SideEffectKind, ...] = (
    SideEffectKind.AUDIT,
    SideEffectKind.NOTIFY,
    SideEffectKind.BROADCAST,
    SideEffectKind.AWARD_POINTS,
)


@dataclass(frozen=True)
class SideEffectDescriptor:
    """
    Declarative record of one side effect a domain operation wants fired.

    ``target`` is the acting or receiving user id for audit, notify and
    points, and the channel name for broadcasts. Payloads must stay
    JSON-serializable.
    """

    kind: SideEffectKind
    target: str
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def audit(
        cls,
        user_id: int,
        role: str,
        action: str,
        details: dict[str, Any] | None = None,
    ) -> "SideEffectDescriptor":
        return cls(
            kind=SideEffectKind.AUDIT,
            target=str(user_id),
            payload={
                "user_id": user_id,
                "role": role,
                "action": action,
                "details": details or {},
            },
        )

    @classmethod
    def notify(
        cls,
        user_id: int,
        notification_type: str,
        message_key: str,
        role: str,
        module: str,
        message_params: dict[str, Any] | None = None,
        language_code: str | None = None,
    ) -> "SideEffectDescriptor":
        return cls(
            kind=SideEffectKind.NOTIFY,
            target=str(user_id),
            payload={
                "user_id": user_id,
                "notification_type": notification_type,
                "message_key": message_key,
                "message_params": message_params or {},
                "role": role,
                "module": module,
                "language_code": language_code,
            },
        )

    @classmethod
    def broadcast(
        cls,
        channel: str,
        event_name: str,
        payload: dict[str, Any],
    ) -> "SideEffectDescriptor":
        return cls(
            kind=SideEffectKind.BROADCAST,
            target=channel,
            payload={"event_name": event_name, "payload": payload},
        )

    @classmethod
    def award_points(
        cls,
        user_id: int,
        action: str,
        points: int,
        metadata: dict[str, Any] | None = None,
    ) -> "SideEffectDescriptor":
        return cls(
            kind=SideEffectKind.AWARD_POINTS,
            target=str(user_id),
            payload={
                "user_id": user_id,
                "action": action,
                "points": points,
                "metadata": metadata or {},
            },
        )


@dataclass(frozen=True)
class SideEffectOutcome:
    descriptor: SideEffectDescriptor
    succeeded: bool
    result: Any = None
    error: str | None = None

    @property
    def kind(self) -> SideEffectKind:
        return self.descriptor.kind
