#!/usr/bin/env python3
"""Parse textual Groth16 / CP-link proof artifacts into verifier field elements.

The proving side dumps every structure as a JSON-encoded string whose leaves
are curve points rendered as text:

* G1 points as ``(x, y)``
* G2 points as ``QuadExtField(re + im * u)``

The on-chain verifier expects G2 coordinates imaginary part first, so every
G2 point is emitted as ``[im, re]``.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import ParseError

UINT256_LIMIT = 1 << 256
G2_PREFIX = "QuadExtField("
BATCH_SIZE_PLACEHOLDER = "{batch_size}"

# (field, point kind) in the order the verifier consumes them
STRUCTURE_FIELDS: Dict[str, List[Tuple[str, str]]] = {
    "vk_groth": [
        ("alpha", "g1"),
        ("beta", "g2"),
        ("delta", "g2"),
        ("abc", "g1"),
        ("gamma", "g2"),
    ],
    "proof_groth": [("a", "g1"), ("b", "g2"), ("c", "g1"), ("d", "g1")],
    "vk_link": [("C", "g2"), ("a", "g2")],
    "proof_link": [("pi", "g1")],
    "instance": [("link_com", "g1"), ("pd_cm", "g1")],
}
STRUCTURES = tuple(STRUCTURE_FIELDS)


class _Scanner:
    def __init__(self, text: str, start: int, end: int, source: str) -> None:
        self.text = text
        self.pos = start
        self.end = end
        self.source = source

    def error(self, message: str, position: Optional[int] = None) -> ParseError:
        return ParseError(message, self.source, self.pos if position is None else position)

    def skip_ws(self) -> None:
        while self.pos < self.end and self.text[self.pos].isspace():
            self.pos += 1

    def expect(self, token: str) -> None:
        self.skip_ws()
        if not self.text.startswith(token, self.pos) or self.pos + len(token) > self.end:
            found = self.text[self.pos : min(self.pos + len(token), self.end)] or "end of group"
            raise self.error(f"expected '{token}', found '{found}'")
        self.pos += len(token)

    def integer(self) -> str:
        self.skip_ws()
        start = self.pos
        if self.pos < self.end and self.text[self.pos] in "+-":
            self.pos += 1
        digits_start = self.pos
        # ASCII only: str.isdigit() also admits superscripts and other scripts
        while self.pos < self.end and "0" <= self.text[self.pos] <= "9":
            self.pos += 1
        if self.pos == digits_start:
            raise self.error("expected an integer", start)
        value = int(self.text[start : self.pos])
        if not 0 <= value < UINT256_LIMIT:
            raise self.error("value outside the uint256 range", start)
        return str(value)

    def finish(self) -> None:
        self.skip_ws()
        if self.pos != self.end:
            raise self.error(f"unexpected trailing text '{self.text[self.pos:self.end]}'")


def parse_g1(text: str, source: str = "") -> List[List[str]]:
    """Return every ``(x, y)`` group in ``text`` as ``[x, y]``, in source order."""
    points: List[List[str]] = []
    index = 0
    while True:
        open_at = text.find("(", index)
        if open_at < 0:
            break
        close_at = text.find(")", open_at + 1)
        if close_at < 0:
            raise ParseError("unterminated '('", source, open_at)
        # innermost group wins for wrappers like "Some((x, y))"
        group_start = text.rfind("(", open_at, close_at) + 1
        scanner = _Scanner(text, group_start, close_at, source)
        x = scanner.integer()
        scanner.expect(",")
        y = scanner.integer()
        scanner.finish()
        points.append([x, y])
        index = close_at + 1
    return points


def parse_g2(text: str, source: str = "") -> List[List[str]]:
    """Return every ``QuadExtField(re + im * u)`` in ``text`` as ``[im, re]``."""
    points: List[List[str]] = []
    index = 0
    while True:
        found = text.find(G2_PREFIX, index)
        if found < 0:
            break
        scanner = _Scanner(text, found + len(G2_PREFIX), len(text), source)
        re_part = scanner.integer()
        scanner.expect("+")
        im_part = scanner.integer()
        scanner.expect("*")
        scanner.expect("u")
        scanner.expect(")")
        points.append([im_part, re_part])
        index = scanner.pos
    return points


_POINT_PARSERS = {"g1": parse_g1, "g2": parse_g2}


def _leaf_text(value: Any, source: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return " ".join(_leaf_text(item, source) for item in value)
    raise ParseError(f"expected a string leaf, found {type(value).__name__}", source)


@dataclass
class ParsedStructure:
    name: str
    fields: Dict[str, List[List[str]]] = field(default_factory=dict)

    def values(self, field_name: str) -> List[str]:
        return [value for point in self.fields[field_name] for value in point]

    def flatten(self) -> List[str]:
        return [value for field_name in self.fields for value in self.values(field_name)]


@dataclass
class ProofArtifact:
    path: str
    structures: Dict[str, ParsedStructure]

    def structure(self, name: str) -> ParsedStructure:
        return self.structures[name]

    def flattened(self, name: str) -> List[str]:
        return self.structures[name].flatten()

    def to_dict(self) -> Dict[str, List[str]]:
        return {name: self.flattened(name) for name in STRUCTURES}


def parse_structure(name: str, raw: Any) -> ParsedStructure:
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ParseError(f"invalid embedded JSON: {exc.msg}", name, exc.pos) from exc
    else:
        data = raw
    if not isinstance(data, dict):
        raise ParseError("expected a JSON object", name)

    parsed = ParsedStructure(name=name)
    for field_name, kind in STRUCTURE_FIELDS[name]:
        source = f"{name}.{field_name}"
        if field_name not in data:
            raise ParseError("required field is missing", source)
        points = _POINT_PARSERS[kind](_leaf_text(data[field_name], source), source)
        if not points:
            raise ParseError(f"no {kind.upper()} points found", source)
        parsed.fields[field_name] = points
    return parsed


def load_artifact(path: str) -> ProofArtifact:
    if not os.path.exists(path):
        raise ParseError(f"proof artifact not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        try:
            document = json.load(handle)
        except json.JSONDecodeError as exc:
            raise ParseError(f"invalid JSON: {exc.msg}", path, exc.pos) from exc
    if not isinstance(document, dict):
        raise ParseError("top level must be a JSON object", path)

    structures: Dict[str, ParsedStructure] = {}
    for name in STRUCTURES:
        if name not in document:
            raise ParseError("required structure is missing", name)
        structures[name] = parse_structure(name, document[name])
    return ProofArtifact(path=path, structures=structures)


class ArtifactCache:
    """Parse each artifact path once; ``{batch_size}`` selects per-batch files."""

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        self._parsed: Dict[str, ProofArtifact] = {}

    def path_for(self, batch_size: int) -> str:
        return self.pattern.replace(BATCH_SIZE_PLACEHOLDER, str(batch_size))

    def get(self, batch_size: int) -> ProofArtifact:
        path = os.path.abspath(self.path_for(batch_size))
        if path not in self._parsed:
            self._parsed[path] = load_artifact(path)
        return self._parsed[path]


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Print flattened verifier inputs for a proof artifact")
    parser.add_argument("artifact", help="Path to the raw proof artifact JSON")
    parser.add_argument("--output", help="Write the flattened JSON here instead of stdout")
    args = parser.parse_args(argv)

    try:
        artifact = load_artifact(args.artifact)
    except ParseError as exc:
        print(f"Fatal error: {exc}", file=sys.stderr)
        return 1

    payload = json.dumps(artifact.to_dict(), indent=2)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            handle.write(payload + "\n")
        print(f"Flattened inputs written to {args.output}")
    else:
        print(payload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
