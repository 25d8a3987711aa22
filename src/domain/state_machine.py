"""Declared transaction lifecycles.

The table is built once at import time and wrapped in read-only mappings, so a
single ``STATE_MACHINE`` instance is shared by every request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Final, Iterable, Mapping


def _freeze(edges: Mapping[str, Iterable[str]]) -> Mapping[str, frozenset[str]]:
    return MappingProxyType({state: frozenset(targets) for state, targets in edges.items()})


@dataclass(frozen=True)
class TransactionLifecycle:
    transaction_type: str
    initial_state: str
    transitions: Mapping[str, frozenset[str]]
    compensations: Mapping[str, frozenset[str]] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def states(self) -> frozenset[str]:
        found = {self.initial_state}
        for edges in (self.transitions, self.compensations):
            for source, targets in edges.items():
                found.add(source)
                found.update(targets)
        return frozenset(found)

    def is_terminal(self, state: str) -> bool:
        return state in self.states and not self.transitions.get(state)


class StateMachine:
    def __init__(self, lifecycles: Iterable[TransactionLifecycle]) -> None:
        self._lifecycles: Mapping[str, TransactionLifecycle] = MappingProxyType(
            {lifecycle.transaction_type: lifecycle for lifecycle in lifecycles}
        )

    @property
    def transaction_types(self) -> frozenset[str]:
        return frozenset(self._lifecycles)

    def lifecycle(self, transaction_type: str) -> TransactionLifecycle | None:
        return self._lifecycles.get(transaction_type)

    def initial_state(self, transaction_type: str) -> str:
        lifecycle = self._lifecycles.get(transaction_type)
        if lifecycle is None:
            raise KeyError(f"Unknown transaction type: {transaction_type}")
        return lifecycle.initial_state

    def is_valid_state(self, transaction_type: str, state: str | None) -> bool:
        lifecycle = self._lifecycles.get(transaction_type)
        return lifecycle is not None and state in lifecycle.states

    def is_terminal(self, transaction_type: str, state: str) -> bool:
        lifecycle = self._lifecycles.get(transaction_type)
        return lifecycle is not None and lifecycle.is_terminal(state)

    def can_transition(
        self,
        transaction_type: str,
        from_state: str | None,
        to_state: str,
        *,
        compensating: bool = False,
    ) -> bool:
        lifecycle = self._lifecycles.get(transaction_type)
        if lifecycle is None or from_state is None:
            return False
        if to_state in lifecycle.transitions.get(from_state, frozenset()):
            return True
        return compensating and to_state in lifecycle.compensations.get(from_state, frozenset())

    def next_states(
        self,
        transaction_type: str,
        from_state: str,
        *,
        compensating: bool = True,
    ) -> frozenset[str]:
        lifecycle = self._lifecycles.get(transaction_type)
        if lifecycle is None:
            return frozenset()
        targets = lifecycle.transitions.get(from_state, frozenset())
        if compensating:
            targets = targets | lifecycle.compensations.get(from_state, frozenset())
        return targets

    def describe(self, transaction_type: str) -> dict[str, Any] | None:
        lifecycle = self._lifecycles.get(transaction_type)
        if lifecycle is None:
            return None
        return {
            "transaction_type": lifecycle.transaction_type,
            "initial_state": lifecycle.initial_state,
            "states": sorted(lifecycle.states),
            "terminal_states": sorted(s for s in lifecycle.states if lifecycle.is_terminal(s)),
            "transitions": {k: sorted(v) for k, v in lifecycle.transitions.items()},
            "compensations": {k: sorted(v) for k, v in lifecycle.compensations.items()},
        }


STATE_MACHINE: Final[StateMachine] = StateMachine(
    [
        TransactionLifecycle(
            transaction_type="INVENTORY_ADJUSTMENT",
            initial_state="pending",
            transitions=_freeze({"pending": {"processed", "failed"}}),
            compensations=_freeze({"processed": {"reversed"}}),
        ),
        TransactionLifecycle(
            transaction_type="PURCHASE",
            initial_state="draft",
            transitions=_freeze(
                {
                    "draft": {"confirmed", "cancelled"},
                    "confirmed": {"received", "cancelled"},
                    "received": {"closed", "cancelled"},
                }
            ),
            compensations=_freeze({"closed": {"returned"}}),
        ),
        TransactionLifecycle(
            transaction_type="SALE",
            initial_state="pending",
            transitions=_freeze({"pending": {"completed", "cancelled"}}),
            compensations=_freeze({"completed": {"cancelled", "returned"}}),
        ),
        TransactionLifecycle(
            transaction_type="TRANSFER",
            initial_state="requested",
            transitions=_freeze(
                {
                    "requested": {"picking", "cancelled"},
                    "picking": {"picked", "cancelled"},
                    "picked": {"shipped", "cancelled"},
                    "shipped": {"received"},
                    "received": {"completed"},
                }
            ),
        ),
        TransactionLifecycle(
            transaction_type="RETURN",
            initial_state="requested",
            transitions=_freeze(
                {
                    "requested": {"completed", "rejected"},
                    "completed": {"transferred"},
                }
            ),
        ),
    ]
)
