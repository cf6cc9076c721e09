"""Error types raised by the phylogenetic flow library.

Each error also derives from the built-in exception a caller would otherwise
catch (``ValueError``, ``KeyError``, ``RuntimeError``), so code written against
plain built-ins keeps working.
"""

from __future__ import annotations

from typing import Iterable, Tuple


class PhyloFlowError(Exception):
    """Base class for all library errors."""


class MalformedFlowError(PhyloFlowError, ValueError):
    """Flow nesting or laminarity is violated; the input structure is corrupt."""


class EmptyQueryError(PhyloFlowError, ValueError):
    """An MRCA query was issued with no member nodes."""


class UnknownMemberError(PhyloFlowError, KeyError):
    """One or more queried node ids are absent from the FlowMatrix.

    Attributes
    ----------
    missing
        The offending ids, in query order.
    """

    def __init__(self, missing: Iterable):
        self.missing: Tuple = tuple(missing)
        preview = ", ".join(map(repr, self.missing[:5]))
        more = f" (+{len(self.missing) - 5} more)" if len(self.missing) > 5 else ""
        super().__init__(f"Unknown member node(s): {preview}{more}")

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message.
        return str(self.args[0])


class DimensionMismatchError(PhyloFlowError, ValueError):
    """Row or column counts of two aligned inputs disagree."""


class NonConvergenceError(PhyloFlowError, RuntimeError):
    """The fitting engine failed to converge. Carries the engine's message verbatim."""


class FitTimeoutError(NonConvergenceError):
    """The fitting engine did not return within the configured timeout."""


__all__ = [
    "PhyloFlowError",
    "MalformedFlowError",
    "EmptyQueryError",
    "UnknownMemberError",
    "DimensionMismatchError",
    "NonConvergenceError",
    "FitTimeoutError",
]
