"""Approval console messages.

Every render is recomputed from the user's stored entitlements; the chat
holds no state of its own. Buttons are returned as rows of
``(text, callback_data)`` pairs so the Telegram layer only wraps them.
"""
from datetime import datetime
from html import escape
from typing import List, Tuple

from config import FORMATIONS, MESSAGES, PAYMENT_INSTRUCTIONS, TIMEZONE
from entitlements import ALL_KEYS, Action, EntitlementKey, callback_data, state_of

Row = List[Tuple[str, str]]

GRANTED = "✅ activé"
REVOKED = "❌ désactivé"


def _now_text(now=None):
    now = now or datetime.now(TIMEZONE)
    return now.strftime('%d/%m/%Y %H:%M:%S')


def _formations_text():
    return "\n".join(
        f"💼 <b>{escape(domain)}</b> : {escape(info['price'])}"
        for domain, info in FORMATIONS.items()
    )


def registration_request(user) -> Tuple[str, List[Row]]:
    """Message posted when a user registers: one validate/cancel pair per key."""
    text = MESSAGES["registration_request"].format(
        name=escape(user.name),
        phone=escape(user.phone),
        formations=_formations_text()
    )
    keyboard = [
        [
            (f"✅ {key.label}", callback_data(Action.APPROVE, key, user.id)),
            (f"❌ {key.label}", callback_data(Action.CANCEL, key, user.id)),
        ]
        for key in ALL_KEYS
    ]
    return text, keyboard


def payment_review(user, key: EntitlementKey, reference, mode, price, now=None) -> Tuple[str, List[Row]]:
    """Message posted when a user reports a payment for one key."""
    text = MESSAGES["payment_review"].format(
        reference=escape(str(reference)),
        phone=escape(user.phone),
        domain=escape(key.domain),
        part=escape(key.part),
        mode=escape(str(mode)),
        price=escape(str(price)),
        date=_now_text(now)
    )
    keyboard = [[
        (f"✅ {key.label}", callback_data(Action.APPROVE, key, user.id)),
        (f"❌ {key.label}", callback_data(Action.CANCEL, key, user.id)),
    ]]
    return text, keyboard


def console_state(user, now=None) -> Tuple[str, List[Row]]:
    """Full entitlement board of a user.

    Each key shows its current state and a button toggling it to the
    opposite one.
    """
    state = state_of(user)
    statuses = "\n".join(
        f"• {escape(key.label)} : {GRANTED if granted else REVOKED}"
        for key, granted in state.items()
    )
    text = MESSAGES["console_state"].format(
        name=escape(user.name),
        phone=escape(user.phone),
        date=_now_text(now),
        statuses=statuses
    )
    keyboard = []
    for key, granted in state.items():
        if granted:
            keyboard.append([(f"{key.label} : {GRANTED}", callback_data(Action.CANCEL, key, user.id))])
        else:
            keyboard.append([(f"{key.label} : {REVOKED}", callback_data(Action.APPROVE, key, user.id))])
    return text, keyboard


def callback_answer(outcome: str, key: EntitlementKey) -> str:
    return MESSAGES[outcome].format(label=key.label)


def notification_text(user, action: Action, key: EntitlementKey) -> str:
    template = MESSAGES["vip_granted"] if action is Action.APPROVE else MESSAGES["vip_revoked"]
    return template.format(name=user.name, domain=key.domain, part=key.part)


def welcome_text(user) -> str:
    formations = "\n".join(
        f"💼 *{domain}* : {info['price']}" for domain, info in FORMATIONS.items()
    )
    return MESSAGES["welcome_user"].format(
        name=user.name,
        formations=formations,
        payment_instructions=PAYMENT_INSTRUCTIONS
    )
