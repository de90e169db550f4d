#!/usr/bin/env python3
import sys
import json
import argparse
from pathlib import Path

# ---------------------------------------------------------------------------
# Import the package whether this script is executed as a module inside the
# sitever package or run directly via `python sitever/cli.py`.
# ---------------------------------------------------------------------------

if __package__ in (None, ""):
    # Running as a standalone script: add project root to path and import absolute
    sys.path.append(str(Path(__file__).resolve().parent.parent))
    from sitever.config import load_settings  # type: ignore
    from sitever.errors import VersionError  # type: ignore
    from sitever.logger import setup_logging  # type: ignore
    from sitever.manager import VersionManager  # type: ignore
else:
    # Running as part of package (python -m sitever.cli)
    from .config import load_settings  # type: ignore
    from .errors import VersionError  # type: ignore
    from .logger import setup_logging  # type: ignore
    from .manager import VersionManager  # type: ignore

EXIT_ERROR = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130


def _format_version(version) -> str:
    active = "*" if version.is_active else " "
    parent = f" <- {version.parent_version_id}" if version.parent_version_id else ""
    note = f"  {version.changelog}" if version.changelog else ""
    line = f"v{version.version_number:<8} {version.id}  {version.created_at:%Y-%m-%d %H:%M:%S}{parent}{note}"
    return f"{active} {line}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='sitever',
        description='Snapshot, activate and roll back versions of generated website output.'
    )
    parser.add_argument(
        '--project',
        required=True,
        help='Project (website) id; its tree lives under WEBSITES_DIR/<project>'
    )
    parser.add_argument(
        '--profile',
        help='Profile name from ~/.sitever_profiles.json to use for settings'
    )
    parser.add_argument(
        '--profile-file',
        dest='profile_file',
        help='Custom path to a profile JSON file (overrides default ~/.sitever_profiles.json)'
    )
    parser.add_argument(
        '--log-file',
        help='Path to a file to save structured JSON logs'
    )

    sub = parser.add_subparsers(dest='command', required=True)

    cut = sub.add_parser('cut', help='Snapshot a source directory as a new version')
    cut.add_argument('source_dir', help='Finished output tree to snapshot')
    cut.add_argument(
        '--change',
        choices=['initial', 'edit', 'regeneration'],
        default='edit',
        help='Change class deciding the next version number (default: edit)'
    )
    cut.add_argument('--changelog', help='Free-text changelog stored with the version')
    cut.add_argument('--quality-score', type=float, dest='quality_score')
    cut.add_argument('--parent', dest='parent_version_id', help='Explicit parent version id')
    cut.add_argument(
        '--no-activate',
        dest='activate',
        action='store_false',
        help='Register the version without making it live'
    )
    cut.add_argument(
        '--expect',
        dest='expected_previous',
        help='Abort unless this is the newest version number ("none" for an empty history)'
    )

    activate = sub.add_parser('activate', help='Make an existing version live')
    activate.add_argument('version_id')

    rollback = sub.add_parser('rollback', help='Copy an older version forward as a new live version')
    rollback.add_argument('version_id')
    rollback.add_argument('--changelog')
    rollback.add_argument(
        '--preview',
        action='store_true',
        help='Show what the rollback would create without doing it'
    )

    sub.add_parser('list', help='List versions, newest first')

    show = sub.add_parser('show', help='Show one version and its lineage')
    show.add_argument('version_id')

    files = sub.add_parser('files', help='List the files recorded for a version')
    files.add_argument('version_id')

    verify = sub.add_parser('verify', help='Re-hash a snapshot and compare with its records')
    verify.add_argument('version_id')

    diff = sub.add_parser('diff', help='File-level changelog between two versions')
    diff.add_argument('from_version_id')
    diff.add_argument('to_version_id')

    sub.add_parser('reconcile', help='Repoint current/ at the registry\'s active version')

    orphans = sub.add_parser('orphans', help='List snapshot directories without a registry record')
    orphans.add_argument(
        '--remove',
        action='store_true',
        help='Delete the orphaned directories'
    )
    return parser


def run(args, manager) -> int:
    command = args.command

    if command in ('cut', 'activate', 'rollback'):
        manager.reconcile()

    if command == 'cut':
        kwargs = {}
        if args.expected_previous is not None:
            kwargs['expected_previous'] = (
                None if args.expected_previous.lower() == 'none' else args.expected_previous
            )
        version = manager.cut(
            args.source_dir,
            args.change,
            parent_version_id=args.parent_version_id,
            changelog=args.changelog,
            quality_score=args.quality_score,
            set_active=args.activate,
            **kwargs
        )
        files = manager.get_files(version.id)
        print(f"Created v{version.version_number} ({version.id}) with {len(files)} files")
        if version.is_active:
            print(f"current -> {manager.current_path()}")

    elif command == 'activate':
        version = manager.activate(args.version_id)
        print(f"Activated v{version.version_number}")
        print(f"current -> {manager.current_path()}")

    elif command == 'rollback':
        if args.preview:
            preview = manager.rollback_preview(args.version_id)
            print(f"Rollback would create v{preview.new_version_number} "
                  f"from v{preview.target.version_number}")
            for v in preview.newer_versions:
                print(f"  kept: v{v.version_number}")
            return 0
        ok, reason = manager.can_rollback(args.version_id)
        if not ok:
            print(f"Cannot roll back: {reason}", file=sys.stderr)
            return EXIT_ERROR
        version = manager.rollback(args.version_id, changelog=args.changelog)
        print(f"Rolled back: created v{version.version_number} (parent {version.parent_version_id})")

    elif command == 'list':
        versions = manager.list_versions()
        if not versions:
            print("No versions.")
        for v in versions:
            print(_format_version(v))

    elif command == 'show':
        chain = manager.lineage(args.version_id)
        head = chain[0]
        print(json.dumps(head.to_dict(), indent=2))
        if len(chain) > 1:
            print("Lineage: " + " -> ".join(f"v{v.version_number}" for v in chain))
        log = manager.version_changelog(head.id)
        if log is not None:
            print(f"Changes since v{log.from_version}: {log.summary}")
            for entry in log.entries:
                print(f"- {entry}")

    elif command == 'files':
        for f in manager.get_files(args.version_id):
            print(f"{f.file_hash}  {f.file_size:>10}  {f.file_path}")

    elif command == 'verify':
        report = manager.verify(args.version_id)
        if report.ok:
            print(f"v{report.version_number}: OK")
            return 0
        print(f"v{report.version_number}: CORRUPTED")
        for label, items in (('missing', report.missing),
                             ('unexpected', report.unexpected),
                             ('corrupted', report.corrupted)):
            for item in items:
                print(f"  {label}: {item}")
        return EXIT_ERROR

    elif command == 'diff':
        log = manager.changelog_between(args.from_version_id, args.to_version_id)
        print(log.summary)
        for entry in log.entries:
            print(f"- {entry}")

    elif command == 'reconcile':
        target = manager.reconcile()
        print(f"current -> {target}" if target else "No active version.")

    elif command == 'orphans':
        found = manager.orphans()
        if not found:
            print("No orphaned snapshots.")
        for number in found:
            if args.remove:
                manager.remove_orphan(number)
                print(f"removed v{number}")
            else:
                print(f"v{number}")

    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(
            args.profile,
            config_path=Path(args.profile_file).expanduser() if args.profile_file else None,
        )
        setup_logging(args.log_file or settings.log_file)
        manager = VersionManager.from_settings(settings, args.project)
        code = run(args, manager)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user.", file=sys.stderr)
        sys.exit(EXIT_INTERRUPTED)
    except VersionError as e:
        print(f"Error [{e.code}]: {e}", file=sys.stderr)
        if e.fatal:
            print("The on-disk state needs operator attention.", file=sys.stderr)
        sys.exit(EXIT_FATAL if e.fatal else EXIT_ERROR)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_ERROR)

    if code:
        sys.exit(code)


if __name__ == '__main__':
    main()
