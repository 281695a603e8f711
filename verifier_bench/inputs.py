"""Batch-scaled verifier arguments built from parsed proof artifacts."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple, Union

from .artifacts import ParsedStructure, ProofArtifact

DEFAULT_MIN_LOG = 1
DEFAULT_MAX_LOG = 10


@dataclass(frozen=True)
class SegmentPlan:
    anchor: Tuple[str, ...] = ()
    replicated: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Segments:
    anchor: List[str]
    replicated: List[str]


# Fields independent of the number of aggregated statements go in the anchor,
# per-statement coordinates are repeated batch_size times.
DEFAULT_PLANS: Dict[str, SegmentPlan] = {
    "vk_groth": SegmentPlan(anchor=("alpha", "beta", "delta", "abc", "gamma")),
    "proof_groth": SegmentPlan(anchor=("a", "b", "c", "d")),
    "vk_link": SegmentPlan(anchor=("a",), replicated=("C",)),
    "proof_link": SegmentPlan(anchor=("pi",)),
    "instance": SegmentPlan(replicated=("link_com", "pd_cm")),
}


@dataclass(frozen=True)
class VerifierLayout:
    name: str
    constructor: Tuple[str, ...]
    verify: Tuple[str, ...]
    constructor_batch_size: bool = True


LAYOUTS: Dict[str, VerifierLayout] = {
    "bcc": VerifierLayout(
        name="bcc",
        constructor=("vk_groth", "vk_link"),
        verify=("instance", "proof_groth", "proof_link"),
    ),
    "cp-link": VerifierLayout(
        name="cp-link",
        constructor=("vk_link",),
        verify=("instance", "proof_link"),
        constructor_batch_size=False,
    ),
    "groth16": VerifierLayout(
        name="groth16",
        constructor=("vk_groth",),
        verify=("proof_groth", "instance"),
    ),
}


def split_segments(structure: ParsedStructure, plan: SegmentPlan) -> Segments:
    anchor = [value for name in plan.anchor for value in structure.values(name)]
    replicated = [value for name in plan.replicated for value in structure.values(name)]
    return Segments(anchor=anchor, replicated=replicated)


def replicate(segments: Segments, batch_size: int) -> List[str]:
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
        raise ValueError(f"Batch size must be a positive integer, received {batch_size!r}")
    return list(segments.anchor) + list(segments.replicated) * batch_size


def is_power_of_two(value: int) -> bool:
    return value > 0 and value & (value - 1) == 0


def batch_sizes(min_log: int = DEFAULT_MIN_LOG, max_log: int = DEFAULT_MAX_LOG) -> List[int]:
    if min_log < 0 or max_log < min_log:
        raise ValueError(f"Invalid batch size range 2^{min_log}..2^{max_log}")
    return [1 << exponent for exponent in range(min_log, max_log + 1)]


def to_uint_list(values: Sequence[str]) -> List[int]:
    return [int(value) for value in values]


class InputBuilder:
    def __init__(
        self,
        artifact: ProofArtifact,
        layout: VerifierLayout,
        plans: Dict[str, SegmentPlan] = DEFAULT_PLANS,
    ) -> None:
        self.artifact = artifact
        self.layout = layout
        self._segments = {
            name: split_segments(artifact.structure(name), plans[name])
            for name in set(layout.constructor) | set(layout.verify)
        }

    def segments(self, name: str) -> Segments:
        return self._segments[name]

    def structure(self, name: str, batch_size: int) -> List[str]:
        return replicate(self._segments[name], batch_size)

    def constructor_args(self, batch_size: int) -> List[Union[List[int], int]]:
        args: List[Union[List[int], int]] = [
            to_uint_list(self.structure(name, batch_size)) for name in self.layout.constructor
        ]
        if self.layout.constructor_batch_size:
            args.append(batch_size)
        return args

    def verify_args(self, batch_size: int) -> List[List[int]]:
        return [to_uint_list(self.structure(name, batch_size)) for name in self.layout.verify]
