import sys
import threading
from collections import defaultdict
from pathlib import Path
from trace import PRAGMA_NOCOVER, Trace, _find_executable_linenos
from typing import NamedTuple

import pytest


COVERAGE_THRESHOLD = 80.0
PROJECT_ROOT = Path(__file__).resolve().parent.parent
SRC_ROOT = PROJECT_ROOT / "src"
TOP_LEVEL = "src"


class LineTally(NamedTuple):
    executed: int
    executable: int

    @property
    def percent(self) -> float:
        return (self.executed / self.executable) * 100 if self.executable else 100.0


def _executable_lines(file_path: Path) -> set[int]:
    executable = set(_find_executable_linenos(str(file_path)))
    if not executable:
        return set()

    try:
        source_lines = file_path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return executable

    return {
        lineno
        for lineno in executable
        if lineno <= len(source_lines) and PRAGMA_NOCOVER not in source_lines[lineno - 1]
    }


def _hits_by_file(results: Trace) -> dict[Path, set[int]]:
    hits: dict[Path, set[int]] = defaultdict(set)
    for (filename, lineno), count in results.counts.items():
        if count > 0:
            hits[Path(filename).resolve()].add(lineno)
    return hits


def _tally_files(results: Trace) -> dict[Path, LineTally]:
    hits = _hits_by_file(results)
    tallies: dict[Path, LineTally] = {}
    for file_path in SRC_ROOT.rglob("*.py"):
        executable = _executable_lines(file_path)
        if executable:
            executed = hits.get(file_path.resolve(), set()) & executable
            tallies[file_path] = LineTally(len(executed), len(executable))
    return tallies


def _package_of(file_path: Path) -> str:
    relative = file_path.relative_to(SRC_ROOT)
    return f"src/{relative.parts[0]}" if len(relative.parts) > 1 else TOP_LEVEL


def _tally_packages(tallies: dict[Path, LineTally]) -> dict[str, LineTally]:
    executed: dict[str, int] = defaultdict(int)
    executable: dict[str, int] = defaultdict(int)
    for file_path, tally in tallies.items():
        package = _package_of(file_path)
        executed[package] += tally.executed
        executable[package] += tally.executable
    return {package: LineTally(executed[package], executable[package]) for package in executable}


def _overall(tallies: dict[Path, LineTally]) -> LineTally:
    return LineTally(
        sum(tally.executed for tally in tallies.values()),
        sum(tally.executable for tally in tallies.values()),
    )


def pytest_sessionstart(session: pytest.Session) -> None:
    tracer = Trace(count=True, trace=False, ignoredirs=[sys.prefix, sys.exec_prefix])
    session.config._tracker_tracer = tracer
    # API routes run service calls on worker threads.
    sys.settrace(tracer.globaltrace)
    threading.settrace(tracer.globaltrace)


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    tracer = getattr(session.config, "_tracker_tracer", None)
    sys.settrace(None)
    threading.settrace(None)

    if tracer is None:
        return

    tallies = _tally_files(tracer.results())
    overall = _overall(tallies)
    session.config._tracker_file_tallies = tallies
    session.config._tracker_overall = overall

    if overall.percent < COVERAGE_THRESHOLD and exitstatus == 0:
        session.exitstatus = pytest.ExitCode.TESTS_FAILED


def pytest_terminal_summary(terminalreporter, exitstatus: int, config: pytest.Config) -> None:
    overall = getattr(config, "_tracker_overall", None)
    tallies = getattr(config, "_tracker_file_tallies", {})

    if overall is None:
        return

    terminalreporter.section("coverage summary")
    terminalreporter.write_line(
        f"Total coverage across src/: {overall.percent:.2f}% "
        f"({overall.executed}/{overall.executable} lines)"
    )
    terminalreporter.write_line(f"Required threshold: {COVERAGE_THRESHOLD:.0f}%")
    if overall.percent < COVERAGE_THRESHOLD:
        terminalreporter.write_line("Coverage below required threshold", red=True)

    if not tallies:
        return

    terminalreporter.write_sep("-", "Package coverage")
    for package, tally in sorted(_tally_packages(tallies).items()):
        terminalreporter.write_line(f"{package}: {tally.percent:.2f}% ({tally.executed}/{tally.executable})")

    lagging = sorted(
        (file_path for file_path, tally in tallies.items() if tally.percent < COVERAGE_THRESHOLD),
        key=lambda file_path: tallies[file_path].percent,
    )
    if lagging:
        terminalreporter.write_sep("-", "Files below threshold")
        for file_path in lagging:
            terminalreporter.write_line(
                f"{file_path.relative_to(PROJECT_ROOT)}: {tallies[file_path].percent:.2f}%"
            )
