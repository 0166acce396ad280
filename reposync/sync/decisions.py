"""Operator decisions at confirmation gates.

Engines never prompt directly. They ask a ``DecisionPolicy`` for every gate;
the CLI supplies an interactive one, automation supplies ``DefaultPolicy``
built from a gate -> decision table.
"""

from __future__ import annotations

from enum import Enum

from loguru import logger

from reposync.errors import SelectionError


class Gate(Enum):
    """Points where a run waits for the operator."""

    RUN = "run"  # Start the apply run after the dry run
    CREATE_DIR = "create_dir"  # Create a missing destination directory
    CONFLICT = "conflict"  # Overwrite a locally modified target file
    CRITICAL = "critical"  # Overwrite a critical-path file
    INCOMPATIBLE = "incompatible"  # Apply a patch whose dry run failed
    REVERT_RUN = "revert_run"  # Revert a whole session


class Decision(Enum):
    PROCEED = "proceed"
    SKIP = "skip"
    ABORT = "abort"


# Non-interactive answers when nothing is configured
DEFAULT_DECISIONS: dict[Gate, Decision] = {
    Gate.RUN: Decision.PROCEED,
    Gate.CREATE_DIR: Decision.SKIP,
    Gate.CONFLICT: Decision.SKIP,
    Gate.CRITICAL: Decision.SKIP,
    Gate.INCOMPATIBLE: Decision.SKIP,
    Gate.REVERT_RUN: Decision.PROCEED,
}


class DecisionPolicy:
    """Answers gates. Subclasses implement ``ask``."""

    def decide(self, gate: Gate, subject: str) -> Decision:
        decision = self.ask(gate, subject)
        logger.info(f"Gate {gate.value} for {subject}: {decision.value}")
        return decision

    def ask(self, gate: Gate, subject: str) -> Decision:
        raise NotImplementedError


class DefaultPolicy(DecisionPolicy):
    """Answers every gate from a fixed table."""

    def __init__(self, table: dict[Gate, Decision] | None = None):
        self.table = dict(DEFAULT_DECISIONS)
        if table:
            self.table.update(table)

    def ask(self, gate: Gate, subject: str) -> Decision:
        return self.table[gate]

    @classmethod
    def from_config(cls, defaults: dict[str, str]) -> "DefaultPolicy":
        """Build from the ``defaults`` mapping of ``reposync.yaml``."""
        table = {}
        for key, value in defaults.items():
            try:
                table[Gate(key)] = Decision(value)
            except ValueError:
                raise SelectionError(f"Invalid default decision: {key}: {value}")
        return cls(table)


class RunAborted(Exception):
    """Raised by a gate answered with ``ABORT``; carries the gated item's result.

    Stops the current run forward-only: nothing already done is undone.
    """

    def __init__(self, result):
        super().__init__(f"Run aborted at {result.target}/{result.item}")
        self.result = result
