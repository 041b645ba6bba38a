"""Inspect and validate a skill corpus from the command line."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from skill_graph import (
    ALL_STRANDS,
    DEFAULT_CORPUS_PATH,
    SkillGraph,
    SkillGraphValidationError,
    SkillNode,
    Strand,
    load_skill_corpus,
    strand_display_name,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--corpus",
        type=str,
        default=str(DEFAULT_CORPUS_PATH),
        help="Path to the skill corpus (JSON or YAML).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("validate", help="Load the corpus and report structural violations.")

    list_parser = sub.add_parser("list", help="List skills grouped by strand.")
    list_parser.add_argument(
        "--strand",
        choices=[strand.value for strand in ALL_STRANDS],
        default=None,
        help="Only list skills of this strand.",
    )
    list_parser.add_argument("--grade", type=int, default=None, help="Only list skills of this grade.")

    sub.add_parser("topo", help="Print skill ids in topological order.")

    export_parser = sub.add_parser("export", help="Write the normalized graph as JSON.")
    export_parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON export instead of stdout.",
    )
    return parser


def _format_skill(skill: SkillNode) -> str:
    prereqs = ", ".join(skill.prerequisites) or "-"
    return f"  {skill.id:<20} grade {skill.grade_level}  {skill.name}  (requires: {prereqs})"


def _list_skills(graph: SkillGraph, strand: Optional[str], grade: Optional[int]) -> List[str]:
    lines: List[str] = []
    strands = [Strand(strand)] if strand else list(ALL_STRANDS)
    for current in strands:
        skills = graph.by_strand(current)
        if grade is not None:
            skills = [skill for skill in skills if skill.grade_level == grade]
        if not skills:
            continue
        lines.append(f"{strand_display_name(current)}:")
        lines.extend(_format_skill(skill) for skill in skills)
    return lines


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        graph = load_skill_corpus(Path(args.corpus))
    except SkillGraphValidationError as exc:
        print(f"Skill corpus {args.corpus} is invalid:", file=sys.stderr)
        for error in exc.errors:
            print(f"  - {error}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as exc:
        print(f"Could not load skill corpus: {exc}", file=sys.stderr)
        return 1

    if args.command == "validate":
        roots = ", ".join(skill.id for skill in graph.root_skills())
        print(f"OK: {len(graph)} skills, roots: {roots}")
        return 0

    if args.command == "list":
        for line in _list_skills(graph, args.strand, args.grade):
            print(line)
        return 0

    if args.command == "topo":
        for skill in graph.topological_order():
            print(skill.id)
        return 0

    payload = json.dumps(graph.to_dict(), indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    else:
        print(payload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
