"""Show which native clone strategies this interpreter selects and try them."""

import argparse
import asyncio
import json
import logging
import pathlib
import sys

DEMO_VALUE: dict[str, list[int | None]] = {"a": [1, 2, None]}
DemoReport = dict[str, object]


def _ensure_src_path(src_path: str) -> None:
    """Ensure ``src`` is importable in the current interpreter.

    :param src_path: Absolute path to the repository ``src`` directory.
    """
    exists: bool = src_path in sys.path
    if exists is False:
        sys.path.insert(0, src_path)


def _describe_clone(original: object, copied: object) -> DemoReport:
    """Summarize whether ``copied`` is an equal but distinct copy.

    :param original: Value that was cloned.
    :param copied: Clone result.
    :returns: Structured result dictionary.
    """
    return {
        "status": "ok",
        "equal": copied == original,
        "distinct": copied is not original,
        "result": repr(copied),
    }


def _run_sync_clone() -> DemoReport:
    """Clone the demo value through the synchronous surface.

    :returns: Structured result dictionary.
    """
    import native_clone

    try:
        copied: object = native_clone.clone_sync(DEMO_VALUE)
    except native_clone.NoNativeImplementationError as exc:
        return {"status": "unavailable", "error_message": str(exc)}
    return _describe_clone(DEMO_VALUE, copied)


async def _run_async_clone() -> DemoReport:
    """Clone the demo value through the asynchronous surface.

    :returns: Structured result dictionary.
    """
    import native_clone

    try:
        copied: object = await native_clone.clone_async(DEMO_VALUE)
    except native_clone.NoNativeImplementationError as exc:
        return {"status": "unavailable", "error_message": str(exc)}
    return _describe_clone(DEMO_VALUE, copied)


def _build_report() -> DemoReport:
    """Select strategies and exercise both clone surfaces.

    :returns: Full demo report.
    """
    import native_clone

    selection: native_clone.Selection = native_clone.get_selection()
    async_warning: str | None = None
    if selection.async_cloner is not None:
        async_warning = selection.async_cloner.warning

    return {
        "python": sys.version.split()[0],
        "sync_strategy": selection.sync_name,
        "async_strategy": selection.async_name,
        "async_strategy_warning": async_warning,
        "can_clone_sync": native_clone.can_clone_sync(),
        "can_clone_async": native_clone.can_clone_async(),
        "sync_clone": _run_sync_clone(),
        "async_clone": asyncio.run(_run_async_clone()),
    }


def _print_text_report(report: DemoReport) -> None:
    """Print the report as aligned ``key: value`` lines.

    :param report: Demo report.
    """
    for key, value in report.items():
        if isinstance(value, dict) is True:
            print(f"{key}:")
            for inner_key, inner_value in value.items():
                print(f"  {inner_key}: {inner_value}")
            continue
        print(f"{key}: {value}")


def main() -> int:
    """Run the demo.

    :returns: Process exit code.
    """
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--json", action="store_true", help="Print the report as JSON.")
    parser.add_argument("--verbose", action="store_true", help="Show strategy selection logs.")
    args: argparse.Namespace = parser.parse_args()

    if args.verbose is True:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s %(levelname)s %(message)s")

    repo_root: pathlib.Path = pathlib.Path(__file__).resolve().parent.parent
    _ensure_src_path(str(repo_root / "src"))

    report: DemoReport = _build_report()
    if args.json is True:
        print(json.dumps(report, indent=2))
    else:
        _print_text_report(report)

    sync_ok: bool = report["can_clone_sync"] is True
    async_ok: bool = report["can_clone_async"] is True
    if sync_ok is True or async_ok is True:
        return 0
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
