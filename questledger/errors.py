"""
Engine exceptions. Every rejection carries a machine-readable `kind` and a
human-readable reason.

Four families, so callers can tell "not yet" from "never" from "no such
thing" from "someone else failed":
- ValidationError: bad input, rejected before anything is touched
- StateError: the quest is in the wrong phase for this operation
- NotFoundError: no such quest / participant / holding / token
- CollaboratorError: signer, oracle or store failed

Degraded data (a missing end price) is not an error. Settlement proceeds
and flags the affected entries as provisional.
"""


class LedgerError(Exception):
    kind = "ledger_error"

    def __init__(self, reason: str, kind: str | None = None):
        super().__init__(reason)
        self.reason = reason
        if kind is not None:
            self.kind = kind


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationError(LedgerError):
    kind = "invalid_request"


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

class StateError(LedgerError):
    kind = "invalid_state"


class RegistrationClosed(StateError):
    kind = "registration_closed"


class AlreadyJoined(StateError):
    kind = "already_joined"


class QuestFull(StateError):
    kind = "quest_full"


class QuestNotStarted(StateError):
    kind = "quest_not_started"


class QuestEnded(StateError):
    kind = "quest_ended"


class QuestNotEnded(StateError):
    kind = "quest_not_ended"


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class NotFoundError(LedgerError):
    kind = "not_found"


class QuestNotFound(NotFoundError):
    kind = "quest_not_found"


class NotAParticipant(NotFoundError):
    kind = "not_a_participant"


class HoldingNotFound(NotFoundError):
    kind = "holding_not_found"


class TokenNotFound(NotFoundError):
    kind = "token_not_found"


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class CollaboratorError(LedgerError):
    kind = "collaborator_error"


class TransferRejected(CollaboratorError):
    kind = "transfer_rejected"


class OracleUnavailable(CollaboratorError):
    kind = "oracle_unavailable"


class StoreUnavailable(CollaboratorError):
    kind = "store_unavailable"
