"""
Transaction state machine.

Pure transition rules for the transaction lifecycle:

    draft -> hold -> confirmed | cancelled | failed | expired

Terminal states accept no further transitions. Every state-changing
transition is recorded with exactly one TxEvent (see EVENT_FOR_TARGET);
RELEASED events document lock release and never change state.

The ledger enforces these rules when it writes; the invariant checker uses
fold_events() to re-derive state from the log and compare.
"""

from collections.abc import Iterable
from typing import ClassVar

from ledger.errors import IllegalEventSequence
from ledger.models import TERMINAL_STATES, TransactionState, TxEventType


class TransactionStateMachine:
    """Transition table and event mapping for Transaction.state."""

    TRANSITIONS: ClassVar[dict[TransactionState, frozenset[TransactionState]]] = {
        TransactionState.DRAFT: frozenset({TransactionState.HOLD}),
        TransactionState.HOLD: frozenset(
            {
                TransactionState.CONFIRMED,
                TransactionState.CANCELLED,
                TransactionState.FAILED,
                TransactionState.EXPIRED,
            }
        ),
        # Terminal states
        TransactionState.CONFIRMED: frozenset(),
        TransactionState.CANCELLED: frozenset(),
        TransactionState.FAILED: frozenset(),
        TransactionState.EXPIRED: frozenset(),
    }

    # Event appended when a transition lands on the target state
    EVENT_FOR_TARGET: ClassVar[dict[TransactionState, TxEventType]] = {
        TransactionState.DRAFT: TxEventType.DRAFT_CREATED,
        TransactionState.HOLD: TxEventType.HOLD_CREATED,
        TransactionState.CONFIRMED: TxEventType.CONFIRM_SUCCESS,
        TransactionState.CANCELLED: TxEventType.CANCELLED,
        TransactionState.FAILED: TxEventType.FAILED,
        TransactionState.EXPIRED: TxEventType.EXPIRED,
    }

    TARGET_FOR_EVENT: ClassVar[dict[TxEventType, TransactionState]] = {
        event: state for state, event in EVENT_FOR_TARGET.items()
    }

    # RELEASED may only follow a transition that gives up the lock
    RELEASING_STATES: ClassVar[frozenset[TransactionState]] = frozenset(
        {
            TransactionState.CANCELLED,
            TransactionState.FAILED,
            TransactionState.EXPIRED,
        }
    )

    @classmethod
    def can_transition(cls, current: TransactionState, target: TransactionState) -> bool:
        return target in cls.TRANSITIONS.get(current, frozenset())


def can_transition(current: TransactionState, target: TransactionState) -> bool:
    return TransactionStateMachine.can_transition(current, target)


def is_terminal(state: TransactionState) -> bool:
    return state in TERMINAL_STATES


def fold_events(events: Iterable, check_sequence: bool = True) -> TransactionState:
    """
    Replay an event log and return the state it implies.

    Events must be ordered by sequence. With ``check_sequence`` the
    sequence numbers must also start at 1 and be contiguous. The first
    event must be DRAFT_CREATED; every later state-changing event must be a
    legal transition from the state folded so far.

    Raises:
        IllegalEventSequence: on an empty log, a gap or an illegal step
    """
    state: TransactionState | None = None
    released = False
    expected_sequence = 1

    for event in events:
        if check_sequence and event.sequence != expected_sequence:
            raise IllegalEventSequence(
                f"Expected sequence {expected_sequence}, got {event.sequence}",
                sequence=event.sequence,
            )
        expected_sequence += 1

        event_type = TxEventType(event.type)

        if event_type == TxEventType.RELEASED:
            if state not in TransactionStateMachine.RELEASING_STATES or released:
                raise IllegalEventSequence(
                    f"RELEASED not allowed after state {state}", sequence=event.sequence
                )
            released = True
            continue

        target = TransactionStateMachine.TARGET_FOR_EVENT[event_type]

        if state is None:
            if target != TransactionState.DRAFT:
                raise IllegalEventSequence(
                    f"Log must start with DRAFT_CREATED, got {event_type.value}",
                    sequence=event.sequence,
                )
            state = target
            continue

        if not can_transition(state, target):
            raise IllegalEventSequence(
                f"Illegal transition {state.value} -> {target.value} "
                f"({event_type.value})",
                sequence=event.sequence,
            )
        state = target

    if state is None:
        raise IllegalEventSequence("Event log is empty")

    return state
