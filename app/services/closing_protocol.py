"""
Calibra — Closing Protocol (evidence → cost → verdict)

The irreversible close of a calibration session is gated behind three phases
that must be completed in order before the close call is made:

  1. **EVIDENCE** — the operator reviews the before/after distributions and
     the deviation correction.  Advancing has no precondition.
  2. **COST** — the operator reviews the bonus-factor delta (with a CFO
     warning when it exceeds the threshold) and must explicitly authorize the
     budgetary impact before advancing.
  3. **VERDICT** — the operator types the confirmation literal.  Only an
     exact, case-insensitive match (surrounding whitespace trimmed) enables
     the commit.

``ClosingProtocol`` is immutable: every transition returns a new instance,
so the state is passed by value between phases and an abandoned protocol
leaves nothing behind.  Holding a protocol never holds a server-side lock;
the only server effect is the final ``commit``.
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from app.services.distribution_service import DistributionEvidence
from app.services.financial_impact_service import FinancialImpact

DEFAULT_CONFIRMATION_LITERAL = "CONFIRMAR"


class Phase(str, Enum):
    EVIDENCE = "evidence"
    COST = "cost"
    VERDICT = "verdict"
    COMMITTED = "committed"
    ABANDONED = "abandoned"


class ProtocolError(Exception):
    """A transition was requested that the current phase does not allow."""


def confirmation_matches(
    text: str | None,
    literal: str = DEFAULT_CONFIRMATION_LITERAL,
) -> bool:
    """True iff ``text`` equals ``literal`` case-insensitively once trimmed."""
    if text is None:
        return False
    return text.strip().casefold() == literal.strip().casefold()


CloseCall = Callable[[uuid.UUID, bool, str], Awaitable[Any]]


@dataclass(frozen=True)
class ClosingProtocol:
    session_id: uuid.UUID
    distribution: DistributionEvidence
    financial: FinancialImpact
    phase: Phase = Phase.EVIDENCE
    budget_authorized: bool = False
    confirmation_text: str = ""
    confirmation_literal: str = DEFAULT_CONFIRMATION_LITERAL

    # ── Derived state ─────────────────────────────────────────────────────

    @property
    def requires_cfo_warning(self) -> bool:
        return self.financial.requires_cfo_warning

    @property
    def can_advance_to_verdict(self) -> bool:
        return self.phase is Phase.COST and self.budget_authorized

    @property
    def can_commit(self) -> bool:
        return (
            self.phase is Phase.VERDICT
            and self.budget_authorized
            and confirmation_matches(self.confirmation_text, self.confirmation_literal)
        )

    @property
    def is_terminal(self) -> bool:
        return self.phase in (Phase.COMMITTED, Phase.ABANDONED)

    # ── Transitions ───────────────────────────────────────────────────────

    def _require(self, *phases: Phase) -> None:
        if self.phase not in phases:
            allowed = ", ".join(p.value for p in phases)
            raise ProtocolError(
                f"Protocol is in phase {self.phase.value!r}; expected {allowed}"
            )

    def advance_to_cost(self) -> "ClosingProtocol":
        self._require(Phase.EVIDENCE)
        return dataclasses.replace(self, phase=Phase.COST)

    def authorize_budget(self, authorized: bool = True) -> "ClosingProtocol":
        self._require(Phase.COST)
        return dataclasses.replace(self, budget_authorized=authorized)

    def advance_to_verdict(self) -> "ClosingProtocol":
        self._require(Phase.COST)
        if not self.budget_authorized:
            raise ProtocolError("The budgetary impact must be authorized first")
        return dataclasses.replace(self, phase=Phase.VERDICT)

    def back(self) -> "ClosingProtocol":
        """Return to the previous phase.  Leaving COST clears the authorization."""
        if self.phase is Phase.COST:
            return dataclasses.replace(self, phase=Phase.EVIDENCE, budget_authorized=False)
        if self.phase is Phase.VERDICT:
            return dataclasses.replace(self, phase=Phase.COST, confirmation_text="")
        raise ProtocolError(f"Cannot go back from phase {self.phase.value!r}")

    def type_confirmation(self, text: str) -> "ClosingProtocol":
        self._require(Phase.VERDICT)
        return dataclasses.replace(self, confirmation_text=text)

    def abandon(self) -> "ClosingProtocol":
        """Walk away from the protocol.  No server call is ever made."""
        if self.is_terminal:
            return self
        return dataclasses.replace(self, phase=Phase.ABANDONED)

    async def commit(self, close: CloseCall) -> tuple["ClosingProtocol", Any]:
        """Invoke ``close`` exactly once and move to COMMITTED on success.

        ``close`` receives ``(session_id, budget_authorized, confirmation_text)``
        so the server can re-validate.  Any exception propagates untouched and
        the protocol stays in VERDICT; a failed or timed-out close is never
        treated as success and is never retried here.
        """
        if not self.can_commit:
            raise ProtocolError("Commit is disabled until the confirmation matches")
        result = await close(self.session_id, self.budget_authorized, self.confirmation_text)
        return dataclasses.replace(self, phase=Phase.COMMITTED), result
