#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///

"""
Reduce base qualities near both edges of aligned reads in SAM/BAM/CRAM.

Sequencing error rates climb towards read ends, so the qualities of the first
and last `num_bases` aligned bases of each read are lowered by
`qual_reduction` (floored at zero). Soft-clipped bases are still present in the
quality array and are covered in addition to the aligned edge bases. Every
record is written back in input order; only the quality array changes.
"""

from __future__ import annotations

import argparse
import sys
from array import array
from dataclasses import dataclass
from enum import Enum
from itertools import chain
from typing import TYPE_CHECKING, NamedTuple

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

__version__ = "0.1.1"

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op code for a soft clip (S)
SOFT_CLIP = 4

# Quality values are stored as unsigned bytes
MAX_QUAL: int = 255

# Standard input/output sentinel for paths
STDIO_PATH = "-"

# Emit a progress debug line after processing this many records
DEBUG_EVERY: int = 100_000


# ------------------------------- EXCEPTIONS -------------------------------- #


class EdgeQualError(Exception):
    """Base class for fatal errors raised while processing a record stream."""


class UnsupportedContainerError(EdgeQualError):
    """The input is not SAM, BAM or CRAM alignment data."""


class MalformedRecordError(EdgeQualError):
    """A record could not be parsed from the input stream."""


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class EdgeSpec:
    """How many aligned edge bases to touch per side, and by how much."""

    num_bases: int = 3
    qual_reduction: int = 20

    def __post_init__(self) -> None:
        if self.num_bases < 0:
            msg = f"num_bases must be non-negative, got {self.num_bases}"
            raise ValueError(msg)
        if not 0 <= self.qual_reduction <= MAX_QUAL:
            msg = f"qual_reduction must be within [0, {MAX_QUAL}], got {self.qual_reduction}"
            raise ValueError(msg)


class ClipLengths(NamedTuple):
    """Soft-clipped base counts at the start and end of a read."""

    leading: int = 0
    trailing: int = 0

    @staticmethod
    def from_cigartuples(cig_raw: list[tuple[int, int]] | None) -> ClipLengths:
        """
        Only the outermost operation on each side counts: a soft clip hidden
        behind a hard clip (e.g. 5H3S...) is not reported.
        """
        if not cig_raw:
            return ClipLengths(0, 0)
        first_op, first_len = cig_raw[0]
        last_op, last_len = cig_raw[-1]
        leading = first_len if first_op == SOFT_CLIP else 0
        trailing = last_len if last_op == SOFT_CLIP else 0
        return ClipLengths(leading, trailing)


class EdgeWindows(NamedTuple):
    """
    Positions picked by the leading and trailing passes over a quality array.

    The two passes are kept apart because a position may be picked by both:
    the trailing pass only steps around the plain `[0, num_bases)` zone, not
    the clip-extended leading window, so with long enough reads and clips a
    position in `[num_bases, num_bases + leading_clip)` is reduced twice.
    """

    leading: range
    trailing: tuple[int, ...]

    def positions(self) -> frozenset[int]:
        """Union of both passes."""
        return frozenset(chain(self.leading, self.trailing))

    def overlap(self) -> frozenset[int]:
        """Positions selected by both passes (reduced twice)."""
        return frozenset(self.leading).intersection(self.trailing)


class AlignmentFormat(Enum):
    """Accepted alignment container formats and their pysam write modes."""

    SAM = "w"
    BAM = "wb"
    CRAM = "wc"

    @property
    def write_mode(self) -> str:
        return self.value


class StreamTotals(NamedTuple):
    """Record counts for one run. Every record read is also written."""

    written: int = 0
    adjusted: int = 0
    skipped: int = 0


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    # stdout may carry the output alignment stream
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# --------------------------- QUALITY TRANSFORMS ---------------------------- #


def reduce_single_qual(q: int, qual_reduction: int) -> int:
    """Subtract `qual_reduction` from `q`, saturating at zero."""
    if q >= qual_reduction:
        return q - qual_reduction
    return 0


def select_edge_windows(
    seq_len: int,
    num_bases: int,
    leading_softclips: int = 0,
    trailing_softclips: int = 0,
) -> EdgeWindows:
    """
    Pick the positions to reduce at each end of a read of length `seq_len`.

    Leading pass: the first `num_bases + leading_softclips` positions.
    Trailing pass: the last `num_bases + trailing_softclips` positions, except
    any that fall inside `[0, num_bases)`, which belongs to the leading edge.
    Both windows are clamped to the array bounds.
    """
    assert seq_len >= 0, f"Sequence length must be non-negative, got {seq_len}"
    assert num_bases >= 0, f"num_bases must be non-negative, got {num_bases}"
    assert leading_softclips >= 0 and trailing_softclips >= 0, (  # noqa: PT018
        f"Soft clip lengths must be non-negative: "
        f"leading={leading_softclips}, trailing={trailing_softclips}"
    )

    leading = range(min(num_bases + leading_softclips, seq_len))

    # Offsets past the start of the array have no position to land on
    trailing_span = min(num_bases + trailing_softclips, seq_len)
    trailing = tuple(
        seq_len - 1 - k for k in range(trailing_span) if seq_len - 1 - k >= num_bases
    )

    return EdgeWindows(leading, trailing)


def select_edge_positions(
    seq_len: int,
    num_bases: int,
    leading_softclips: int = 0,
    trailing_softclips: int = 0,
) -> frozenset[int]:
    """Set of positions touched by either edge pass."""
    return select_edge_windows(
        seq_len,
        num_bases,
        leading_softclips,
        trailing_softclips,
    ).positions()


def reduce_qualities_at_positions(
    qual: Sequence[int],
    positions: Iterable[int],
    qual_reduction: int,
) -> list[int]:
    """
    Return a copy of `qual` with each listed position reduced once per
    occurrence in `positions`. Unlisted positions are copied unchanged.
    """
    out = list(qual)
    for pos in positions:
        out[pos] = reduce_single_qual(out[pos], qual_reduction)

    assert len(out) == len(qual), (
        f"Quality length changed during reduction: {len(qual)} -> {len(out)}"
    )
    return out


def reduce_qualities_in_edges(
    qual: Sequence[int],
    num_bases: int,
    qual_reduction: int,
    leading_softclips: int = 0,
    trailing_softclips: int = 0,
) -> list[int]:
    """
    Reduce qualities over both read edges. The leading pass runs first, then
    the trailing pass; see `EdgeWindows` for when a position gets both.
    """
    windows = select_edge_windows(
        len(qual),
        num_bases,
        leading_softclips,
        trailing_softclips,
    )
    if windows.overlap():
        logger.trace(
            f"Positions {sorted(windows.overlap())} fall in both edge windows "
            "and are reduced twice.",
        )
    return reduce_qualities_at_positions(
        qual,
        chain(windows.leading, windows.trailing),
        qual_reduction,
    )


# ---------------------------- RECORD ADJUSTMENT ---------------------------- #


def reduce_qualities_in_read(aln: pysam.AlignedSegment, spec: EdgeSpec) -> bool:
    """
    Reduce edge qualities of `aln` in place.

    Only `query_qualities` is assigned: re-assigning `query_sequence` in pysam
    would wipe the qualities, and name/CIGAR/position need no rewrite.
    Returns False (record untouched) when the read carries no sequence or
    no qualities.
    """
    qual = aln.query_qualities  # array('B') or None
    if qual is None or aln.query_sequence is None:
        logger.debug(
            f"Skip quality reduction: the read '{aln.query_name}' has no "
            "sequence or qualities.",
        )
        return False

    assert len(qual) == len(aln.query_sequence), (
        f"Sequence/quality length mismatch for '{aln.query_name}': "
        f"seq={len(aln.query_sequence)}, qual={len(qual)}"
    )

    clips = ClipLengths.from_cigartuples(aln.cigartuples)
    new_qual = reduce_qualities_in_edges(
        qual,
        spec.num_bases,
        spec.qual_reduction,
        clips.leading,
        clips.trailing,
    )
    aln.query_qualities = array("B", new_qual)

    logger.trace(
        f"Reduced edge qualities for '{aln.query_name}': "
        f"clips={tuple(clips)}, len={len(new_qual)}",
    )
    return True


# ----------------------------- I/O UTILITIES ------------------------------- #


def _reference_kwargs(reference: str | None) -> dict[str, str]:
    if reference is None:
        return {}
    assert len(reference) > 0, "Reference path must be non-empty if provided"
    return {"reference_filename": reference}


def open_input(path: str, reference: str | None = None) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM for reading with format auto-detection.
    `path` may be "-" for standard input.
    """
    assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
        f"Path must be non-empty string, got: {path!r}"
    )
    source = "stdin" if path == STDIO_PATH else path
    logger.debug(f"Opening for read: {source}")
    try:
        return pysam.AlignmentFile(
            path,
            "r",
            check_sq=False,
            **_reference_kwargs(reference),
        )
    except ValueError as exc:
        # htslib refuses non-alignment data before any record is read
        msg = f"The input {source} is not recognized as sequence data: {exc}"
        raise UnsupportedContainerError(msg) from exc


def detect_format(handle: pysam.AlignmentFile) -> AlignmentFormat:
    """Gate the input on htslib's detected category and exact format."""
    if handle.category != "ALIGNMENTS":
        msg = f"The file is not recognized as sequence data (category={handle.category})"
        raise UnsupportedContainerError(msg)
    try:
        return AlignmentFormat[handle.format]
    except KeyError:
        msg = f"Input file is not recognized as Sam, Bam or Cram (format={handle.format})"
        raise UnsupportedContainerError(msg) from None


def open_output(
    path: str,
    template: pysam.AlignmentFile,
    fmt: AlignmentFormat,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open the sink in the same container family as the input, copying the
    header losslessly from `template`. `path` may be "-" for standard output.
    """
    assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
        f"Path must be non-empty string, got: {path!r}"
    )
    sink = "stdout" if path == STDIO_PATH else path
    logger.debug(f"Opening for write: {sink} (mode={fmt.write_mode})")
    return pysam.AlignmentFile(
        path,
        fmt.write_mode,
        template=template,
        **_reference_kwargs(reference),
    )


# ------------------------------ CORE LOGIC --------------------------------- #


def process_stream(
    inp: Iterable[pysam.AlignedSegment],
    outp: pysam.AlignmentFile,
    spec: EdgeSpec,
) -> StreamTotals:
    """
    Stream input -> output one record at a time, reducing edge qualities.

    Records are written as soon as they are adjusted, in input order. A record
    that fails to parse aborts the run with `MalformedRecordError`; write
    failures propagate as `OSError`.
    """
    written = 0
    adjusted = 0
    skipped = 0

    records = iter(inp)
    while True:
        try:
            aln = next(records)
        except StopIteration:
            break
        except (OSError, ValueError) as exc:
            msg = f"Failed to parse record after {written} written records: {exc}"
            raise MalformedRecordError(msg) from exc

        if reduce_qualities_in_read(aln, spec):
            adjusted += 1
        else:
            skipped += 1

        outp.write(aln)
        written += 1

        if written % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: written={written}, adjusted={adjusted}, skipped={skipped}",
            )

    assert written == adjusted + skipped, (
        f"Record count inconsistency: written={written}, adjusted={adjusted}, "
        f"skipped={skipped}"
    )
    logger.info(
        f"Process totals: written={written}, adjusted={adjusted}, skipped={skipped}",
    )
    return StreamTotals(written, adjusted, skipped)


def run(
    in_path: str,
    out_path: str,
    spec: EdgeSpec,
    reference: str | None = None,
) -> StreamTotals:
    """
    Open input, check its format, open a matching output and stream through.
    The output is not created if the input fails the format check.
    """
    input_alignment = open_input(in_path, reference=reference)
    try:
        fmt = detect_format(input_alignment)
        logger.info(f"Detected input format: {fmt.name}")
        if fmt is AlignmentFormat.CRAM and reference is None:
            logger.warning(
                "Processing CRAM without explicit reference. "
                "Decoding may fail unless the reference is resolvable.",
            )

        output_alignment = open_output(
            out_path,
            template=input_alignment,
            fmt=fmt,
            reference=reference,
        )
        try:
            totals = process_stream(input_alignment, output_alignment, spec)
        finally:
            output_alignment.close()
    finally:
        input_alignment.close()

    return totals


# --------------------------------- CLI ------------------------------------- #


def _non_negative_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        msg = f"invalid integer: {text!r}"
        raise argparse.ArgumentTypeError(msg) from None
    if value < 0:
        msg = f"must be non-negative, got {value}"
        raise argparse.ArgumentTypeError(msg)
    return value


def _qual_value(text: str) -> int:
    value = _non_negative_int(text)
    if value > MAX_QUAL:
        msg = f"must be within [0, {MAX_QUAL}], got {value}"
        raise argparse.ArgumentTypeError(msg)
    return value


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        prog="trim_quals",
        description="Reduce the qualities of the bases located in the edges of aligned reads.",
    )

    # I/O
    p.add_argument(
        "input",
        nargs="?",
        default=STDIO_PATH,
        help='Input SAM/BAM/CRAM path (default: "-" (stdin))',
    )
    p.add_argument(
        "output",
        nargs="?",
        default=STDIO_PATH,
        help='Output path, written in the input format (default: "-" (stdout))',
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )

    # Edge policy
    p.add_argument(
        "--num-bases",
        type=_non_negative_int,
        default=3,
        help="Number of aligned bases to process from each edge (default: 3)",
    )
    p.add_argument(
        "--qual-reduction",
        type=_qual_value,
        default=20,
        help="Quality reduction applied to edge bases, floored at 0 (default: 20)",
    )

    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting edge quality reduction run.")

    spec = EdgeSpec(num_bases=args.num_bases, qual_reduction=args.qual_reduction)
    logger.debug(f"EdgeSpec: {spec}")

    try:
        totals = run(args.input, args.output, spec, reference=args.reference)
    except (EdgeQualError, OSError) as exc:
        logger.error(str(exc))
        sys.exit(1)

    logger.success(
        f"Written: {totals.written} | Adjusted: {totals.adjusted} | "
        f"Skipped (no sequence/qualities): {totals.skipped}",
    )
    logger.info("Edge quality reduction run complete.")


if __name__ == "__main__":
    main()
