"""VIP entitlements: catalog, callback codec and the approval state machine.

An entitlement is the paid access right of one user to one part of a
training domain (e.g. Informatique x Hardware). The administrator grants and
revokes entitlements from the Telegram approval console; every click is
turned into a :class:`CallbackEvent` and fed to :func:`transition`, which is
pure: it returns the next state together with the side effects the caller
must execute (store write, console answer, console re-render, user
notification).
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from errors import InvalidKey, ValidationError


class Action(Enum):
    APPROVE = "validate"
    CANCEL = "cancel"


@dataclass(frozen=True)
class EntitlementKey:
    domain: str
    part: str

    @property
    def label(self) -> str:
        return f"{self.domain} - {self.part}"

    @property
    def field(self) -> str:
        return ENTITLEMENT_FIELDS[self]

    def __str__(self):
        return f"{self.domain} {self.part}"


# Column of the users table holding each entitlement flag
ENTITLEMENT_FIELDS: Dict[EntitlementKey, str] = {
    EntitlementKey("Informatique", "Hardware"): "is_informatique_hardware",
    EntitlementKey("Informatique", "Software"): "is_informatique_software",
    EntitlementKey("Bureautique", "Hardware"): "is_bureautique_hardware",
    EntitlementKey("Bureautique", "Software"): "is_bureautique_software",
    EntitlementKey("Marketing", "Social"): "is_marketing_social",
    EntitlementKey("Marketing", "Content"): "is_marketing_content",
    EntitlementKey("GSM", "Hardware"): "is_gsm_hardware",
    EntitlementKey("GSM", "Software"): "is_gsm_software",
}

ALL_KEYS: Tuple[EntitlementKey, ...] = tuple(ENTITLEMENT_FIELDS)
DOMAINS: Tuple[str, ...] = tuple(dict.fromkeys(key.domain for key in ALL_KEYS))
PARTS: Tuple[str, ...] = tuple(dict.fromkeys(key.part for key in ALL_KEYS))

CALLBACK_PATTERN = re.compile(r'^(validate|cancel)_([A-Za-z]+)_([A-Za-z]+)_([0-9a-fA-F]{24})$')
USER_ID_PATTERN = re.compile(r'^[0-9a-fA-F]{24}$')


def entitlement_key(domain: str, part: str) -> EntitlementKey:
    """Return the catalog key for (domain, part) or raise InvalidKey."""
    if not isinstance(domain, str) or not isinstance(part, str):
        raise InvalidKey(f"Unknown entitlement: {domain!r} - {part!r}")
    key = EntitlementKey(domain, part)
    if key not in ENTITLEMENT_FIELDS:
        raise InvalidKey(f"Unknown entitlement: {domain} - {part}")
    return key


def keys_for_domain(domain: str) -> List[EntitlementKey]:
    return [key for key in ALL_KEYS if key.domain == domain]


def is_valid_user_id(user_id: str) -> bool:
    return bool(user_id) and bool(USER_ID_PATTERN.match(user_id))


@dataclass(frozen=True)
class CallbackEvent:
    action: Action
    key: EntitlementKey
    user_id: str


def callback_data(action: Action, key: EntitlementKey, user_id: str) -> str:
    return f"{action.value}_{key.domain}_{key.part}_{user_id}"


def parse_callback(data: str) -> CallbackEvent:
    """Decode ``action_domain_part_userId`` into a CallbackEvent.

    Raises ValidationError for an unknown action, a malformed user id or a
    (domain, part) pair outside the catalog.
    """
    match = CALLBACK_PATTERN.match(data or "")
    if not match:
        raise ValidationError(f"Malformed callback data: {data!r}")
    action, domain, part, user_id = match.groups()
    return CallbackEvent(Action(action), entitlement_key(domain, part), user_id.lower())


def state_of(user) -> Dict[EntitlementKey, bool]:
    """Snapshot of every entitlement flag of a user row."""
    return {key: bool(getattr(user, field)) for key, field in ENTITLEMENT_FIELDS.items()}


def granted_keys(user) -> List[EntitlementKey]:
    return [key for key, granted in state_of(user).items() if granted]


# Side effects produced by transition(), executed in order by the caller

@dataclass(frozen=True)
class WriteEntitlement:
    key: EntitlementKey
    value: bool


@dataclass(frozen=True)
class AnswerCallback:
    outcome: str  # approved | cancelled | already_approved | already_cancelled
    key: EntitlementKey


@dataclass(frozen=True)
class RenderConsole:
    pass


@dataclass(frozen=True)
class NotifyUser:
    action: Action
    key: EntitlementKey


Effect = Union[WriteEntitlement, AnswerCallback, RenderConsole, NotifyUser]


def transition(state: Dict[EntitlementKey, bool],
               event: CallbackEvent) -> Tuple[Dict[EntitlementKey, bool], List[Effect]]:
    """Apply an approval console event to a user's entitlement state.

    Approving a granted key (or cancelling an unpaid one) is a no-op that
    only answers the callback: no write, no re-render, no notification.
    """
    target = event.action is Action.APPROVE
    if state.get(event.key, False) == target:
        outcome = "already_approved" if target else "already_cancelled"
        return dict(state), [AnswerCallback(outcome, event.key)]

    next_state = dict(state)
    next_state[event.key] = target
    return next_state, [
        WriteEntitlement(event.key, target),
        AnswerCallback("approved" if target else "cancelled", event.key),
        RenderConsole(),
        NotifyUser(event.action, event.key),
    ]


def can_view(video, user: Optional[object]) -> bool:
    """Free videos are open to everyone; paid ones need the matching grant.

    A paid video without a part is unlocked by any granted part of its
    domain.
    """
    if not video.is_paid:
        return True
    if user is None:
        return False
    state = state_of(user)
    if video.part:
        key = EntitlementKey(video.category_id, video.part)
        return state.get(key, False)
    return any(state[key] for key in keys_for_domain(video.category_id))
