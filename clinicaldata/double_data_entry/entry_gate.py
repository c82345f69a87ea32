# -*- coding: utf-8 -*-
"""
Entry Authorization Gate - Double Data-Entry Reconciliation Engine

Decides whether a user may enter data on a form instance and whether the
entry would count as the first or the second one. The decision is a pure
function of the form instance state, the user id and the double-entry
flag; it never touches a store.

Rules, in order:
    1. Before first entry is complete: allowed as the first entry.
    2. Double entry not required: denied (not_required).
    3. Second-entrant slot filled: denied (already_complete).
    4. User is the first entrant: denied (same_entrant).
    5. Otherwise: allowed as the second entry.

Example:
    >>> gate = EntryAuthorizationGate()
    >>> decision = gate.authorize(form, "user-2", form.double_entry_required)
    >>> decision.allowed, decision.entry_type
    (True, <EntryType.SECOND: 'second'>)
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Type

from clinicaldata.double_data_entry.metrics import inc_authorization_denials
from clinicaldata.double_data_entry.models import (
    AuthorizationDecision,
    EntryStatus,
    EntryType,
    FormInstance,
)
from clinicaldata.exceptions import (
    AlreadyComplete,
    AuthorizationDenied,
    NotRequired,
    SameEntrant,
)

logger = logging.getLogger(__name__)

__all__ = ["EntryAuthorizationGate", "DENIAL_EXCEPTIONS"]

NOT_REQUIRED = "not_required"
ALREADY_COMPLETE = "already_complete"
SAME_ENTRANT = "same_entrant"

DENIAL_EXCEPTIONS: Dict[str, Type[AuthorizationDenied]] = {
    NOT_REQUIRED: NotRequired,
    ALREADY_COMPLETE: AlreadyComplete,
    SAME_ENTRANT: SameEntrant,
}


class EntryAuthorizationGate:
    """Pure authorization rules for first and second entry.

    Attributes:
        name_resolver: Optional callable mapping a user id to a display
            name, used in the same-entrant refusal message.
    """

    def __init__(self, name_resolver: Optional[Callable[[str], Optional[str]]] = None) -> None:
        self.name_resolver = name_resolver

    def _display_name(self, user_id: Optional[str]) -> str:
        if user_id is None:
            return "unknown user"
        if self.name_resolver is not None:
            name = self.name_resolver(user_id)
            if name:
                return name
        return user_id

    def authorize(
        self,
        form_instance: FormInstance,
        user_id: str,
        double_entry_required: Optional[bool] = None,
    ) -> AuthorizationDecision:
        """Decide whether ``user_id`` may enter data on ``form_instance``.

        Args:
            form_instance: Current state of the form instance.
            user_id: Requesting user.
            double_entry_required: Double-entry flag; defaults to the
                flag carried by the form instance.

        Returns:
            AuthorizationDecision with entry type or refusal reason.
        """
        if double_entry_required is None:
            double_entry_required = form_instance.double_entry_required

        if form_instance.status.rank < EntryStatus.FIRST_ENTRY_COMPLETE.rank:
            return AuthorizationDecision(allowed=True, entry_type=EntryType.FIRST)

        if not double_entry_required:
            return self._deny(form_instance, NOT_REQUIRED, "DDE not required for this form")

        if form_instance.second_entrant_id is not None:
            return self._deny(form_instance, ALREADY_COMPLETE, "DDE entries already complete")

        if user_id == form_instance.first_entrant_id:
            return self._deny(
                form_instance,
                SAME_ENTRANT,
                "Different user required for second entry. "
                f"First entry was done by {self._display_name(form_instance.first_entrant_id)}",
            )

        return AuthorizationDecision(allowed=True, entry_type=EntryType.SECOND)

    def _deny(
        self, form_instance: FormInstance, reason_code: str, reason: str,
    ) -> AuthorizationDecision:
        inc_authorization_denials(reason_code)
        logger.info(
            "Entry refused on form instance %s: %s",
            form_instance.form_instance_id, reason_code,
        )
        return AuthorizationDecision(allowed=False, reason=reason, reason_code=reason_code)

    @staticmethod
    def to_exception(decision: AuthorizationDecision, form_instance_id: str) -> AuthorizationDenied:
        """Build the AuthorizationDenied subclass matching a refusal."""
        exc_class = DENIAL_EXCEPTIONS.get(decision.reason_code or "", AuthorizationDenied)
        return exc_class(
            decision.reason or "Entry not authorized",
            context={"form_instance_id": form_instance_id},
        )
