"""Signal tools: per-track summaries, chromosome lengths and track merging.

Each concern has an external-binary implementation (driven through a
:class:`~varwig.external.CommandRunner`) and/or an in-process pyBigWig one.
"""

from __future__ import annotations

import logging
import math
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

import numpy as np
import pyBigWig

from .errors import NotFound
from .external import CommandRunner, ExternalCommandError, failure_message
from .models import Window

logger = logging.getLogger(__name__)


class SummaryToolError(ExternalCommandError):
    """The signal summarizer failed or produced unreadable output."""


class MergeToolError(ExternalCommandError):
    """The track merger exited non-zero or produced no output."""


class Summarizer(Protocol):
    def summarize(self, path: str | Path, chrom: str, start: int, end: int) -> Optional[float]: ...


class Merger(Protocol):
    def merge(
        self,
        paths: Sequence[str],
        window: Window,
        output: Path,
        deviation: Optional[Path] = None,
    ) -> None: ...


@contextmanager
def open_bigwig(path: str | Path) -> Iterator["pyBigWig.pyBigWig"]:
    p = str(path)
    try:
        bw = pyBigWig.open(p)
    except RuntimeError as e:
        raise OSError(f"Cannot open bigWig {p}: {e}") from e
    if bw is None:
        raise OSError(f"Cannot open bigWig {p}")
    try:
        yield bw
    finally:
        bw.close()


class BigWigSummaryTool:
    """Mean signal over an interval via UCSC ``bigWigSummary``.

    ``bigWigSummary`` reports an empty interval on stderr ("no data in region");
    that case maps to ``None``, never to 0.
    """

    def __init__(self, *, executable: str = "bigWigSummary", runner: Optional[CommandRunner] = None) -> None:
        self.executable = executable
        self.runner = runner or CommandRunner()

    def build_command(self, path: str | Path, chrom: str, start: int, end: int) -> List[str]:
        return [self.executable, str(path), str(chrom), str(int(start)), str(int(end)), "1"]

    def summarize(self, path: str | Path, chrom: str, start: int, end: int) -> Optional[float]:
        cmd = self.build_command(path, chrom, start, end)
        cp = self.runner.run(cmd, check=False)
        stdout = cp.stdout or ""
        stderr = cp.stderr or ""
        if "no data" in stderr.lower() or "no data" in stdout.lower():
            return None
        if cp.returncode != 0:
            raise SummaryToolError(
                failure_message(cmd, cp.returncode, stderr),
                cmd=cmd,
                returncode=cp.returncode,
                stdout=stdout,
                stderr=stderr,
            )
        tokens = stdout.split()
        if not tokens or tokens[0] == "n/a":
            return None
        try:
            value = float(tokens[0])
        except ValueError:
            raise SummaryToolError(
                f"Unreadable bigWigSummary output for {path}: {stdout[:200]!r}",
                cmd=cmd,
                returncode=cp.returncode,
                stdout=stdout,
                stderr=stderr,
            )
        return None if math.isnan(value) else value


def _in_process_call(name: str, path: str | Path, chrom: str, start: int, end: int) -> List[str]:
    """Pseudo command line recorded on errors from in-process pyBigWig calls."""
    return [f"pyBigWig.{name}", str(path), str(chrom), str(int(start)), str(int(end))]


class PyBigWigSummarizer:
    """Mean signal over an interval read in-process with pyBigWig."""

    def summarize(self, path: str | Path, chrom: str, start: int, end: int) -> Optional[float]:
        with open_bigwig(path) as bw:
            length = bw.chroms(chrom)
            if length is None:
                return None
            try:
                value = bw.stats(chrom, int(start), int(end), type="mean")[0]
            except RuntimeError as e:
                # raised for intervals running past the chromosome end
                raise SummaryToolError(
                    f"Cannot summarize {path} over {chrom}:{start}-{end} (length {length}): {e}",
                    cmd=_in_process_call("stats", path, chrom, start, end),
                    returncode=-1,
                ) from e
        if value is None or math.isnan(value):
            return None
        return float(value)


class BigWigChromLengths:
    """Chromosome lengths read from bigWig headers, memoized."""

    def __init__(self) -> None:
        self._lengths: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def length_of(self, path: str | Path, chrom: str) -> int:
        key = (str(path), str(chrom))
        with self._lock:
            if key in self._lengths:
                return self._lengths[key]
        with open_bigwig(path) as bw:
            length = bw.chroms(chrom)
        if length is None:
            raise NotFound(f"Chromosome {chrom} not present in {path}")
        with self._lock:
            self._lengths[key] = int(length)
        return int(length)


class ExternalMergeTool:
    """Windowed track merge through an external binary.

    Invoked as ``<exe> -o OUT -c CHROM -s START -e END [-d DEV] PATH...``.
    """

    def __init__(self, *, executable: str = "bigwig-merge", runner: Optional[CommandRunner] = None) -> None:
        self.executable = executable
        self.runner = runner or CommandRunner()

    def build_command(
        self,
        paths: Sequence[str],
        window: Window,
        output: Path,
        deviation: Optional[Path] = None,
    ) -> List[str]:
        cmd = [
            self.executable,
            "-o",
            str(output),
            "-c",
            window.chrom,
            "-s",
            str(int(window.start)),
            "-e",
            str(int(window.end)),
        ]
        if deviation is not None:
            cmd += ["-d", str(deviation)]
        return cmd + [str(p) for p in paths]

    def merge(
        self,
        paths: Sequence[str],
        window: Window,
        output: Path,
        deviation: Optional[Path] = None,
    ) -> None:
        cmd = self.build_command(paths, window, output, deviation)
        cp = self.runner.run(cmd, check=False)
        if cp.returncode != 0:
            raise MergeToolError(
                failure_message(cmd, cp.returncode, cp.stderr),
                cmd=cmd,
                returncode=cp.returncode,
                stdout=cp.stdout,
                stderr=cp.stderr,
            )
        if not Path(output).exists():
            raise MergeToolError(
                f"Merge tool exited 0 but wrote no output: {output}",
                cmd=cmd,
                returncode=cp.returncode,
                stdout=cp.stdout,
                stderr=cp.stderr,
            )


def _runs(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Start offsets and lengths of runs of equal values."""
    if values.size == 0:
        return np.array([], dtype=np.int64), np.array([], dtype=np.int64)
    change = np.flatnonzero(np.diff(values)) + 1
    starts = np.concatenate(([0], change))
    ends = np.concatenate((change, [values.size]))
    return starts, ends - starts


def _write_bigwig(path: Path, chrom: str, chrom_length: int, start: int, values: np.ndarray) -> None:
    bw = pyBigWig.open(str(path), "w")
    if bw is None:
        raise OSError(f"Cannot create bigWig {path}")
    try:
        bw.addHeader([(chrom, int(chrom_length))], maxZooms=0)
        offsets, lengths = _runs(values)
        if offsets.size:
            starts = [int(start + o) for o in offsets]
            bw.addEntries(
                [chrom] * len(starts),
                starts,
                ends=[s + int(n) for s, n in zip(starts, lengths)],
                values=[float(values[o]) for o in offsets],
            )
    finally:
        bw.close()


class PyBigWigMerger:
    """In-process merge: per-base mean across inputs, population SD as deviation.

    Bases without data in an input count as 0, including bases past the end of
    an input's (shorter) chromosome. The output is written over the part of the
    window that lies within the shortest chromosome of the group.
    """

    def merge(
        self,
        paths: Sequence[str],
        window: Window,
        output: Path,
        deviation: Optional[Path] = None,
    ) -> None:
        if not paths:
            raise ValueError("Nothing to merge")
        width = window.end - window.start
        rows: List[np.ndarray] = []
        chrom_length: Optional[int] = None
        for p in paths:
            row = np.zeros(width, dtype=float)
            with open_bigwig(p) as bw:
                length = bw.chroms(window.chrom)
                if length is None:
                    raise OSError(f"Chromosome {window.chrom} not present in {p}")
                length = int(length)
                chrom_length = length if chrom_length is None else min(chrom_length, length)
                end = min(window.end, length)
                if end > window.start:
                    try:
                        vals = np.asarray(bw.values(window.chrom, window.start, end), dtype=float)
                    except RuntimeError as e:
                        raise MergeToolError(
                            f"Cannot read {p} over {window.chrom}:{window.start}-{end}: {e}",
                            cmd=_in_process_call("values", p, window.chrom, window.start, end),
                            returncode=-1,
                        ) from e
                    row[: vals.size] = np.nan_to_num(vals, nan=0.0)
            rows.append(row)

        assert chrom_length is not None
        span = min(window.end, chrom_length) - window.start
        if span <= 0:
            raise MergeToolError(
                f"Window {window.chrom}:{window.start}-{window.end} starts past the end of "
                f"the shortest input chromosome ({chrom_length})",
                cmd=_in_process_call("values", paths[0], window.chrom, window.start, window.end),
                returncode=-1,
            )
        matrix = np.vstack(rows)[:, :span]
        _write_bigwig(Path(output), window.chrom, chrom_length, window.start, matrix.mean(axis=0))
        if deviation is not None:
            _write_bigwig(Path(deviation), window.chrom, chrom_length, window.start, matrix.std(axis=0))
