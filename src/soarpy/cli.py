# cli.py
import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import Config, DEFAULT_CONFIG_PATH, write_default_config
from .errors import SoarError
from .install import InstallOptions
from .logger import Colors, configure_logging, setup_logger
from .models import OperationResult
from .operations import DownloadContext, Operations
from .progress import TqdmProgress
from .utils import format_size

_logger = setup_logger()


class SplitCommaSeparated(argparse.Action):
    """Accept `a,b , c` and repeated flags alike."""

    def __call__(self, parser, namespace, values, option_string=None):
        if isinstance(values, str):
            values = [values]
        items = list(getattr(namespace, self.dest, None) or [])
        for value in values or []:
            items.extend(v.strip() for v in value.split(",") if v.strip())
        setattr(namespace, self.dest, items)


# ------------------------
# Interactive helpers (CLI only; the core never reads stdin)
# ------------------------
def _confirm(record) -> bool:
    answer = input(f"Install {record.name} {record.version} ({record.repo_name})? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def _choose(candidates):
    for idx, cand in enumerate(candidates, 1):
        label = getattr(cand, "qualified", None) or getattr(cand, "name", str(cand))
        print(f"  {idx}) {label}")
    answer = input(f"Select [1-{len(candidates)}]: ").strip()
    if answer.isdigit() and 1 <= int(answer) <= len(candidates):
        return candidates[int(answer) - 1]
    return None


def _status_line(ok: bool, label: str, message: str = "") -> None:
    tag = f"{Colors.GREEN}OK{Colors.RESET}" if ok else f"{Colors.RED}FAIL{Colors.RESET}"
    print(f"[{tag}] {label}" + (f": {message}" if message else ""))


def _print_outcomes(result: OperationResult) -> None:
    for outcome in result.items:
        _status_line(outcome.ok, outcome.item, outcome.message)


def _exit_code(result: OperationResult) -> int:
    return 0 if result.success else 1


# ------------------------
# Parser
# ------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="soarpy", description="Portable binary package manager")
    parser.add_argument("--config", "-c", type=Path, help="Config file (default: $SOARPY_CONFIG or %s)" % DEFAULT_CONFIG_PATH)
    parser.add_argument("--profile", "-p", help="Profile to operate on")
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument("--quiet", "-q", action="store_true")
    parser.add_argument("--no-color", dest="color", action="store_false")
    parser.add_argument("--no-progress", dest="progress", action="store_false")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # ------------------------
    # Repositories
    # ------------------------

    # sync / S
    p_sync = subparsers.add_parser("sync", aliases=["S"], help="Sync repository metadata")
    p_sync.add_argument("repos", nargs="*", help="Repository names (default: all enabled)")
    p_sync.add_argument("--force", "-f", action="store_true", help="Ignore sync_interval")

    # ------------------------
    # Package lifecycle
    # ------------------------

    # install / i
    p_install = subparsers.add_parser("install", aliases=["i"], help="Install packages")
    p_install.add_argument("packages", nargs="+", help="name[#pkg_id][@version][:repo]")
    p_install.add_argument("--force", "-f", action="store_true", help="Reinstall even if installed")
    p_install.add_argument("--yes", "-y", action="store_true", help="Never prompt")
    p_install.add_argument("--ask", "-a", action="store_true", help="Confirm each package")
    p_install.add_argument("--portable", nargs="?", const="", metavar="DIR")
    p_install.add_argument("--portable-home", nargs="?", const="", metavar="DIR")
    p_install.add_argument("--portable-config", nargs="?", const="", metavar="DIR")
    p_install.add_argument("--portable-share", nargs="?", const="", metavar="DIR")
    p_install.add_argument("--no-notes", action="store_true")
    p_install.add_argument("--binary-only", action="store_true", help="Skip icons and desktop files")

    # update / u
    p_update = subparsers.add_parser("update", aliases=["u"], help="Update installed packages")
    p_update.add_argument("packages", nargs="*", help="Packages to update (default: all)")
    p_update.add_argument("--keep", "-k", type=int, default=1, help="Previous versions to keep")
    p_update.add_argument("--ask", "-a", action="store_true")
    p_update.add_argument("--yes", "-y", action="store_true")

    # remove / r
    p_remove = subparsers.add_parser("remove", aliases=["r"], help="Remove installed packages")
    p_remove.add_argument("packages", nargs="+")

    # use
    p_use = subparsers.add_parser("use", help="Point the binary symlink at an installed package")
    p_use.add_argument("package")

    # run
    p_run = subparsers.add_parser("run", help="Run a package without installing it")
    p_run.add_argument("--yes", "-y", action="store_true")
    p_run.add_argument("package")
    p_run.add_argument("args", nargs=argparse.REMAINDER)

    # ------------------------
    # Queries
    # ------------------------

    # list / ls
    p_list = subparsers.add_parser("list", aliases=["ls"], help="List available packages")
    p_list.add_argument("--repo", "-r")

    # list-installed / li
    p_li = subparsers.add_parser("list-installed", aliases=["li"], help="List installed packages")
    p_li.add_argument("--repo", "-r")
    p_li.add_argument("--count", action="store_true")

    # query / Q
    p_query = subparsers.add_parser("query", aliases=["Q"], help="Show package details")
    p_query.add_argument("package")

    # search / s
    p_search = subparsers.add_parser("search", aliases=["s"], help="Search packages")
    p_search.add_argument("query")
    p_search.add_argument("--case-sensitive", action="store_true")
    p_search.add_argument("--limit", "-n", type=int)

    # inspect / log
    p_inspect = subparsers.add_parser("inspect", help="Show a package's build script")
    p_inspect.add_argument("package")
    p_log = subparsers.add_parser("log", help="Show a package's build log")
    p_log.add_argument("package")

    # ------------------------
    # Maintenance
    # ------------------------

    p_health = subparsers.add_parser("health", help="Check installed packages")
    p_health.add_argument("--repair", action="store_true", help="Fix what can be fixed")

    p_clean = subparsers.add_parser("clean", help="Remove caches and broken installs")
    p_clean.add_argument("--cache", action="store_true")
    p_clean.add_argument("--broken-symlinks", action="store_true")
    p_clean.add_argument("--broken", action="store_true")

    subparsers.add_parser("env", help="Print environment paths")

    p_defconfig = subparsers.add_parser("defconfig", help="Write a default config file")
    p_defconfig.add_argument("--repositories", "-r", action=SplitCommaSeparated, nargs="+", default=[])

    # ------------------------
    # Download / dl
    # ------------------------
    p_dl = subparsers.add_parser("download", aliases=["dl"], help="Download URLs, releases or packages")
    p_dl.add_argument("links", nargs="*", help="URLs or package references")
    p_dl.add_argument("--github", action="append", default=[], metavar="OWNER/REPO[@TAG]")
    p_dl.add_argument("--gitlab", action="append", default=[], metavar="OWNER/REPO[@TAG]")
    p_dl.add_argument("--ghcr", action="append", default=[], metavar="REFERENCE")
    p_dl.add_argument("--output", "-o", type=Path)
    p_dl.add_argument("--regex", action="append", default=[])
    p_dl.add_argument("--glob", action="append", default=[])
    p_dl.add_argument("--match", action=SplitCommaSeparated, nargs="+", default=[])
    p_dl.add_argument("--exclude", action=SplitCommaSeparated, nargs="+", default=[])
    p_dl.add_argument("--exact-case", action="store_true")
    p_dl.add_argument("--yes", "-y", action="store_true")
    p_dl.add_argument("--skip-existing", action="store_true")
    p_dl.add_argument("--force-overwrite", action="store_true")
    p_dl.add_argument("--extract", action="store_true")
    p_dl.add_argument("--extract-dir", type=Path)

    return parser


# ------------------------
# Dispatch
# ------------------------
def handle_command(args: argparse.Namespace, ops: Operations) -> int:
    progress = TqdmProgress() if getattr(args, "progress", True) else None
    cmd = args.command

    if cmd in ("sync", "S"):
        result = ops.sync(force=args.force, repos=args.repos or None)
        _print_outcomes(result)
        return _exit_code(result)

    if cmd in ("install", "i"):
        options = InstallOptions(
            force=args.force,
            yes=args.yes,
            ask=args.ask,
            portable=args.portable,
            portable_home=args.portable_home,
            portable_config=args.portable_config,
            portable_share=args.portable_share,
            no_notes=args.no_notes,
            binary_only=args.binary_only,
            confirm=_confirm,
            select=_choose,
            progress=progress,
        )
        result = ops.install(args.packages, options)
        _print_outcomes(result)
        for outcome in result.items:
            notes = getattr(outcome.data, "notes", None)
            if notes:
                print(f"{Colors.YELLOW}Notes for {outcome.item}:{Colors.RESET}\n{notes}")
        return _exit_code(result)

    if cmd in ("update", "u"):
        result = ops.update(args.packages or None, keep=args.keep, ask=args.ask, yes=args.yes,
                            confirm=_confirm, progress=progress)
        _print_outcomes(result)
        return _exit_code(result)

    if cmd in ("remove", "r"):
        result = ops.remove(args.packages)
        _print_outcomes(result)
        return _exit_code(result)

    if cmd == "use":
        result = ops.use_package(args.package)
        _print_outcomes(result)
        return _exit_code(result)

    if cmd == "run":
        result = ops.run(args.package, args.args, yes=args.yes, select=_choose, progress=progress)
        if not result.success:
            _print_outcomes(result)
            return 1
        return result.data.exit_code

    if cmd in ("list", "ls"):
        for rec in ops.list_available(args.repo).data:
            print(f"{rec.name}#{rec.pkg_id}:{rec.repo_name} {Colors.CYAN}{rec.version}{Colors.RESET}"
                  + (f" - {rec.description}" if rec.description else ""))
        return 0

    if cmd in ("list-installed", "li"):
        result = ops.list_installed(args.repo, count=args.count)
        if args.count:
            print(result.data)
            return 0
        for inst in result.data:
            print(f"{inst.name}#{inst.pkg_id}:{inst.repo_name} {Colors.CYAN}{inst.version}{Colors.RESET} "
                  f"{inst.install_path}")
        return 0

    if cmd in ("query", "Q"):
        result = ops.query(args.package)
        if not result.success:
            _print_outcomes(result)
            return 1
        for outcome in result.items:
            rec, installed = outcome.data
            _print_record(rec, installed)
        return 0

    if cmd in ("search", "s"):
        result = ops.search(args.query, case_sensitive=args.case_sensitive, limit=args.limit)
        for rec in result.data:
            print(f"{rec.name}#{rec.pkg_id}:{rec.repo_name} {Colors.CYAN}{rec.version}{Colors.RESET}"
                  + (f" - {rec.description}" if rec.description else ""))
        if not result.data:
            _logger.info("No packages match '%s'", args.query)
        return 0

    if cmd in ("inspect", "log"):
        result = ops.inspect(args.package, kind="log" if cmd == "log" else "script")
        if not result.success:
            _print_outcomes(result)
            return 1
        print(result.data)
        return 0

    if cmd == "health":
        result = ops.repair() if args.repair else ops.check_health()
        _print_outcomes(result)
        return _exit_code(result)

    if cmd == "clean":
        result = ops.clean(cache=args.cache, broken_symlinks=args.broken_symlinks, broken=args.broken)
        _print_outcomes(result)
        return _exit_code(result)

    if cmd == "env":
        for key, value in ops.env().data.items():
            print(f"{key}={value}")
        return 0

    if cmd in ("download", "dl"):
        context = DownloadContext(
            output_dir=args.output,
            regex_filters=args.regex,
            glob_filters=args.glob,
            match_keywords=args.match,
            exclude_keywords=args.exclude,
            exact_case=args.exact_case,
            yes=args.yes,
            skip_existing=args.skip_existing,
            force_overwrite=args.force_overwrite,
            extract=args.extract,
            extract_dir=args.extract_dir,
            select=_choose,
            progress=progress,
        )
        result = ops.download(context, links=args.links, github=args.github, gitlab=args.gitlab, ghcr=args.ghcr)
        _print_outcomes(result)
        return _exit_code(result)

    raise ValueError(f"Unknown command: {cmd}")


def _print_record(rec, installed) -> None:
    rows = [
        ("Name", rec.name),
        ("Package ID", rec.pkg_id),
        ("Version", rec.version),
        ("Repository", rec.repo_name),
        ("Size", format_size(rec.size) if rec.size else None),
        ("Checksum", rec.checksum),
        ("Source", rec.origin_descriptor),
        ("Description", rec.description),
        ("Installed", f"{installed.version} at {installed.install_path}" if installed else None),
    ]
    for label, value in rows:
        if value:
            print(f"{Colors.BOLD}{label:<12}{Colors.RESET} {value}")
    print()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, quiet=args.quiet, color=args.color)

    if args.command == "defconfig":
        path = args.config or DEFAULT_CONFIG_PATH
        write_default_config(Path(path), repositories=args.repositories or None)
        return 0

    try:
        config = Config(args.config, profile=args.profile)
        with Operations(config) as ops:
            return handle_command(args, ops)
    except KeyboardInterrupt:
        _logger.error("Interrupted")
        return 130
    except SoarError as e:
        _logger.error(str(e))
        return 1
    except OSError as e:
        _logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
