#!/usr/bin/env python3
"""
FormationLab CLI

Command-line interface for building, analyzing and optimizing formations.

Usage:
    formationlab templates
    formationlab assign <roster.yaml> [--template 4-3-3]
    formationlab analyze <roster.yaml> [--template 4-3-3]
    formationlab optimize <roster.yaml> [--template 4-3-3] [--iterations N]
"""

import argparse
import copy
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from .errors import FormationError

logger = logging.getLogger(__name__)


def load_roster(path: str):
    """
    Load entities from a roster YAML file.

    Expected layout:
        players:
          - id: p1
            name: ...
            role: striker
            attributes: {pace: 80, ...}
    """
    from .model.abstraction import Entity

    roster_path = Path(path)
    if not roster_path.exists():
        raise FileNotFoundError(f"Roster file not found: {roster_path}")
    with open(roster_path, "r") as f:
        data = yaml.safe_load(f) or {}
    players = data.get("players") if isinstance(data, dict) else None
    if not isinstance(players, list):
        raise ValueError(f"Roster file must contain a 'players' list: {roster_path}")
    return [Entity.from_dict(record) for record in players]


def _open_session(args):
    """Build a session holding an auto-assigned formation."""
    from .api.session import EditingSession
    from .collab.collaborators import InMemoryRoster
    from .config import get_config
    from .model.templates import create_formation

    config = copy.deepcopy(get_config(args.config))
    roster = InMemoryRoster(load_roster(args.roster))
    formation = create_formation(args.template, roster.all(), name=Path(args.roster).stem)
    session = EditingSession(formation, config, author="cli")
    result = session.auto_assign()
    return session, result


def _emit(args, payload, lines: List[str]):
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        print("\n".join(lines))


def cmd_templates(args):
    """List bundled formation templates."""
    from .model.templates import list_templates

    templates = list_templates()
    payload = [
        {"code": t.code, "name": t.name, "category": t.category, "slots": len(t.slots)}
        for t in templates
    ]
    lines = [f"  {t.code:<8} {t.name:<28} {t.category:<12} {len(t.slots)} slots" for t in templates]
    _emit(args, payload, ["Available templates:"] + lines)
    return 0


def cmd_assign(args):
    """Auto-assign a roster into a template."""
    session, result = _open_session(args)
    formation = session.formation

    lines = [f"Formation: {formation.name} ({args.template}), revision {formation.revision}"]
    for slot in formation.slots:
        entity = formation.entities.get(slot.entity_id) if slot.entity_id else None
        score = result.scores.get(slot.id)
        name = entity.name if entity else "-"
        lines.append(
            f"  {slot.id:<6} {slot.role:<22} {name:<24} "
            + (f"{score:6.2f}" if score is not None else "")
        )
    lines.append(f"Total compatibility: {result.total_score:.2f}")
    if result.bench:
        lines.append(f"Bench: {', '.join(result.bench)}")
    if result.excluded:
        lines.append(f"Unavailable: {', '.join(result.excluded)}")

    payload = {
        "formation": session.to_dict(),
        "scores": result.scores,
        "total_score": result.total_score,
        "bench": result.bench,
        "excluded": result.excluded,
    }
    _emit(args, payload, lines)
    return 0


def cmd_analyze(args):
    """Assign a roster and print tactical metrics."""
    session, _ = _open_session(args)
    analysis = session.analyze()

    lines = [
        "Coverage: " + ", ".join(f"{k}={v}" for k, v in analysis.coverage.items()),
        f"Coverage balance:     {analysis.coverage_balance:.2f}",
        f"Average chemistry:    {analysis.average_chemistry:.1f}",
        f"Defensive line:       height {analysis.defensive_line_height:.1f}, "
        f"shape {analysis.defensive_line_shape:.2f}",
        f"Passing lanes:        {analysis.passing_lane_quality:.2f}",
        f"Width / compactness:  {analysis.width:.1f} / {analysis.compactness:.1f}",
        f"Objective:            {analysis.objective:.4f}",
    ]
    for title, items in (("Strengths", analysis.strengths),
                         ("Weaknesses", analysis.weaknesses),
                         ("Recommendations", analysis.recommendations)):
        if items:
            lines.append(f"{title}:")
            lines.extend(f"  - {item}" for item in items)
    _emit(args, analysis.to_dict(), lines)
    return 0


def cmd_optimize(args):
    """Assign a roster, then refine the formation with local search."""
    session, _ = _open_session(args)
    if args.iterations is not None:
        session.optimizer.config.optimizer.max_iterations = args.iterations

    def progress_callback(iteration, score):
        print(f"  Iteration {iteration}: objective={score:.4f}")

    result = session.optimize(callback=progress_callback if args.verbose and not args.json else None)

    lines = [
        f"Objective: {result.initial_score:.4f} -> {result.final_score:.4f} ({result.delta:+.4f})",
        f"Stopped after {result.iterations} iterations ({result.reason})",
        f"Accepted changes: {len(result.changes)}",
    ]
    if result.partial:
        lines.append("Result is partial (best found so far)")
    payload = {
        "initial_score": result.initial_score,
        "final_score": result.final_score,
        "delta": result.delta,
        "iterations": result.iterations,
        "reason": result.reason,
        "partial": result.partial,
        "changes": result.changes,
        "formation": session.to_dict(),
    }
    _emit(args, payload, lines)
    return 0


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--config', help='Engine configuration YAML overriding the defaults')
    common.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    common.add_argument('--json', action='store_true', help='Print JSON instead of text')

    parser = argparse.ArgumentParser(
        description="FormationLab - Tactical Formation Editor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  formationlab templates
  formationlab assign squad.yaml --template 4-4-2
  formationlab analyze squad.yaml --json
  formationlab optimize squad.yaml --iterations 200 -v
        """,
    )

    parser.add_argument('--version', action='version', version='formationlab 0.1.0')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('templates', parents=[common], help='List formation templates')

    for name, help_text in (('assign', 'Auto-assign a roster to a template'),
                            ('analyze', 'Show tactical metrics for an assigned roster'),
                            ('optimize', 'Optimize an assigned formation')):
        sub = subparsers.add_parser(name, parents=[common], help=help_text)
        sub.add_argument('roster', help='Roster YAML file')
        sub.add_argument('-t', '--template', default='4-3-3', help='Template code (default: 4-3-3)')
        if name == 'optimize':
            sub.add_argument('--iterations', type=int, help='Max iterations (default: from config)')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    # Dispatch command
    commands = {
        'templates': cmd_templates,
        'assign': cmd_assign,
        'analyze': cmd_analyze,
        'optimize': cmd_optimize,
    }

    try:
        return commands[args.command](args)
    except (FormationError, FileNotFoundError, ValueError) as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
