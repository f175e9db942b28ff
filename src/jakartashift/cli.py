"""jakartashift CLI: analyze, plan, execute and verify a namespace migration."""

import argparse
import logging
import sys
from importlib.metadata import version as get_version, PackageNotFoundError
from pathlib import Path
from typing import Optional, Tuple


def _phase_range(text: str) -> Tuple[int, int]:
    """Parse "2" or "1-3" into an inclusive phase range."""
    try:
        if "-" in text:
            start, end = text.split("-", 1)
            return int(start), int(end)
        return int(text), int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid phase range: {text!r} (expected N or N-M)")


def _emit(model, out: Optional[Path], quiet: bool, summary) -> None:
    """Write model as canonical JSON to out, or to stdout when out is not given."""
    from ._internal.canonical_json import write_canonical
    from .kernel.hash_utils import canonical_dumps

    data = model.model_dump(mode="json")
    if out is not None:
        write_canonical(out, data)
        if not quiet:
            for line in summary:
                print(line)
            print(f"  Output: {out}")
    else:
        print(canonical_dumps(data))


def _configure_logging(args) -> None:
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def main():
    """Main CLI entry point for jakartashift commands."""
    try:
        jakartashift_version = get_version("jakartashift")
    except PackageNotFoundError:
        jakartashift_version = "dev"

    parser = argparse.ArgumentParser(
        prog="jakartashift",
        description="jakartashift: phased javax to jakarta migration planning and execution"
    )
    parser.add_argument("--version", action="version", version=f"jakartashift {jakartashift_version}")
    # Common arguments
    parent_parser = argparse.ArgumentParser(add_help=False)
    parent_parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress all non-error output."
    )
    parent_parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging on stderr."
    )
    parent_parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="Directory for progress records and snapshots (defaults to ~/.jakartashift)"
    )
    parent_parser.add_argument(
        "--kb",
        type=Path,
        default=None,
        help="Path to a compatibility knowledge base YAML file (defaults to the bundled table)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    analyze_parser = subparsers.add_parser(
        "analyze",
        help="Build the dependency graph, classify it and scan sources",
        parents=[parent_parser]
    )
    analyze_parser.add_argument("project", type=Path, help="Project root directory")
    analyze_parser.add_argument("--out", type=Path, default=None, help="Write the analysis JSON here")

    plan_parser = subparsers.add_parser(
        "plan",
        help="Compute the four-phase migration plan",
        parents=[parent_parser]
    )
    plan_parser.add_argument("project", type=Path, help="Project root directory")
    plan_parser.add_argument(
        "--analysis",
        type=Path,
        default=None,
        help="Reuse an analysis JSON written by 'analyze --out' instead of re-analyzing"
    )
    plan_parser.add_argument("--max-batch", type=int, default=None, help="Batch size ceiling for high-risk phases")
    plan_parser.add_argument("--out", type=Path, default=None, help="Write the plan JSON here")

    execute_parser = subparsers.add_parser(
        "execute",
        help="Execute plan phases with checkpoints (resumes an interrupted run)",
        parents=[parent_parser]
    )
    execute_parser.add_argument("project", type=Path, help="Project root directory")
    execute_parser.add_argument("--plan", type=Path, required=True, help="Plan JSON written by 'plan --out'")
    execute_parser.add_argument(
        "--phases",
        type=_phase_range,
        default=(1, 4),
        help="Phase or phase range to run, e.g. 2 or 1-3 (default 1-4)"
    )
    execute_parser.add_argument(
        "--rewrite-command",
        nargs="+",
        default=None,
        help="External command used to rewrite each file (the file path is appended)"
    )
    execute_parser.add_argument("--out", type=Path, default=None, help="Write the execution result JSON here")

    skip_parser = subparsers.add_parser(
        "skip",
        help="Acknowledge failed or pending files so their phase can complete",
        parents=[parent_parser]
    )
    skip_parser.add_argument("project", type=Path, help="Project root directory")
    skip_parser.add_argument("files", nargs="+", help="Project-relative file paths")

    rollback_parser = subparsers.add_parser(
        "rollback",
        help="Restore files from checkpoints",
        parents=[parent_parser]
    )
    rollback_parser.add_argument("project", type=Path, help="Project root directory")
    rollback_group = rollback_parser.add_mutually_exclusive_group()
    rollback_group.add_argument("--to-phase", type=int, default=1, help="Undo every phase from this one on (default 1)")
    rollback_group.add_argument("--file", default=None, help="Undo a single file of the current phase")

    status_parser = subparsers.add_parser(
        "status",
        help="Show the persisted migration progress",
        parents=[parent_parser]
    )
    status_parser.add_argument("project", type=Path, help="Project root directory")
    status_parser.add_argument("--out", type=Path, default=None, help="Write the progress record JSON here")

    verify_parser = subparsers.add_parser(
        "verify",
        help="Run the built artifact and classify runtime failures",
        parents=[parent_parser]
    )
    verify_parser.add_argument("artifact", type=Path, help="Built jar or war")
    verify_parser.add_argument("--project", type=Path, default=None, help="Working directory for the run")
    verify_parser.add_argument("--plan", type=Path, default=None, help="Plan JSON for correlating failures")
    verify_parser.add_argument("--timeout", type=float, default=None, help="Wall-clock timeout in seconds")
    verify_parser.add_argument("--memory-mb", type=int, default=None, help="Memory ceiling for the child process")
    verify_parser.add_argument("--mark-verified", action="store_true",
                               help="On success, move the project's progress to 'verified' (needs --project)")
    verify_parser.add_argument("--out", type=Path, default=None, help="Write the verification result JSON here")

    finalize_parser = subparsers.add_parser(
        "finalize",
        help="Mark a verified migration complete and release snapshots",
        parents=[parent_parser]
    )
    finalize_parser.add_argument("project", type=Path, help="Project root directory")

    report_parser = subparsers.add_parser(
        "report",
        help="Render an analysis or plan JSON as Markdown",
        parents=[parent_parser]
    )
    report_parser.add_argument("kind", choices=["analysis", "plan"], help="What the input file holds")
    report_parser.add_argument("input", type=Path, help="JSON written by 'analyze --out' or 'plan --out'")
    report_parser.add_argument("--out", type=Path, default=None, help="Write the Markdown here")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args)

    # Lazy imports: only load the engine once a command is known
    from . import api
    from ._internal.canonical_json import read_json
    from .config import load_settings
    from .exceptions import EngineError
    from .kernel.plan import MigrationPlan

    try:
        settings = load_settings(
            state_dir=args.state_dir,
            knowledge_base_path=args.kb,
            rewrite_command=getattr(args, "rewrite_command", None),
            high_risk_max_batch=getattr(args, "max_batch", None),
        )

        if args.command == "analyze":
            result = api.analyze(args.project, settings=settings)
            _emit(result, args.out, args.quiet, [
                "[OK] Analysis complete",
                f"  Readiness: {result.readiness.score:.2f} ({result.readiness.message})",
                f"  Blockers: {len(result.blockers)}",
                f"  Recommendations: {len(result.recommendations)}",
                f"  Files with legacy usage: {len(result.usages)}",
                f"  Warnings: {len(result.warnings)}",
            ])

        elif args.command == "plan":
            analysis = None
            if args.analysis is not None:
                analysis = api.AnalysisResult.model_validate(read_json(args.analysis))
            result = api.plan(args.project, analysis, settings=settings)
            _emit(result, args.out, args.quiet, [
                f"[OK] Plan {result.fingerprint[:12]}",
                *[f"  Phase {p.number}: {len(p.files)} file(s), risk {p.risk.value}" for p in result.phases],
            ])

        elif args.command == "execute":
            migration_plan = MigrationPlan.model_validate(read_json(args.plan))
            result = api.execute(args.project, migration_plan, args.phases, settings=settings)
            failed = [r for r in result.per_file if r.status.value == "failed"]
            _emit(result, args.out, args.quiet, [
                f"[{result.outcome.value.upper()}] Execution {result.outcome.value}",
                f"  State: {result.state.label}",
                f"  Files processed: {len(result.per_file)}",
                f"  Failed: {len(failed)}",
            ])
            if result.message and not args.quiet:
                print(f"  {result.message}")
            if result.outcome.value != "completed":
                sys.exit(1)

        elif args.command == "skip":
            record = api.skip(args.project, args.files, settings=settings)
            if not args.quiet:
                print(f"[OK] Skipped {len(args.files)} file(s)")
                print(f"  State: {record.state.label}")

        elif args.command == "rollback":
            record = api.rollback(args.project, args.to_phase, file=args.file, settings=settings)
            if not args.quiet:
                print("[OK] Rollback complete")
                print(f"  State: {record.state.label}")

        elif args.command == "status":
            record = api.status(args.project, settings=settings)
            if args.out is not None:
                _emit(record, args.out, args.quiet, [f"[OK] State: {record.state.label}"])
            elif not args.quiet:
                print(f"State: {record.state.label}")
                counts = {}
                for file_status in record.file_status.values():
                    counts[file_status.value] = counts.get(file_status.value, 0) + 1
                for name in sorted(counts):
                    print(f"  {name}: {counts[name]}")
                for file in record.files_failed:
                    print(f"  failed: {file} ({record.file_errors.get(file, '')})")

        elif args.command == "verify":
            context = api.VerificationContext(
                project_path=str(args.project) if args.project else None,
                plan=MigrationPlan.model_validate(read_json(args.plan)) if args.plan else None,
                timeout_seconds=args.timeout,
                memory_mb=args.memory_mb,
            )
            result = api.verify(args.artifact, context, settings=settings)
            summary = [
                f"[{result.status.value.upper()}] Verification {result.status.value}",
                f"  Errors: {len(result.errors)}",
            ]
            if result.analysis is not None:
                summary.append(f"  Category: {result.analysis.category.value} ({result.analysis.confidence:.2f})")
                summary.append(f"  Root cause: {result.analysis.root_cause}")
            _emit(result, args.out, args.quiet, summary)
            if result.status.value == "success" and args.mark_verified:
                if args.project is None:
                    print("Error: --mark-verified requires --project", file=sys.stderr)
                    sys.exit(1)
                api.mark_verified(args.project, settings=settings)
            if result.status.value != "success":
                sys.exit(1)

        elif args.command == "finalize":
            record = api.finalize(args.project, settings=settings)
            if not args.quiet:
                print("[OK] Migration complete")
                print(f"  State: {record.state.label}")

        elif args.command == "report":
            from ._internal.reporting.markdown import render_analysis, render_plan

            data = read_json(args.input)
            if args.kind == "analysis":
                analysis = api.AnalysisResult.model_validate(data)
                text = render_analysis(analysis, api.impact_summary(analysis))
            else:
                text = render_plan(MigrationPlan.model_validate(data))
            if args.out is not None:
                args.out.write_text(text + "\n", encoding="utf-8")
                if not args.quiet:
                    print(f"[OK] Report: {args.out}")
            else:
                print(text)

        else:
            parser.print_help()
            sys.exit(1)
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
