#!/usr/bin/env python3
"""
Page-Aligned Binary Diff

Computes a compact delta between two buffers whose lengths are exact
multiples of a fixed page size, and reconstructs the second buffer from the
first plus that delta.  Intended for periodically snapshotted state (save
files, persisted heaps, memory-mapped pages) where only a few pages change
between snapshots.

A diff records, for every changed page of the target, either the changed
byte ranges ("commits") or a single commit replacing the whole page once
enough of the page differs:

  [page_size, page_count, [[page_index, [[offset, "hex"], ...]], ...]]

Identical buffers of equal length produce no diff at all (None / JSON null).

Usage:
  python pagediff.py encode  <baseline> <target> <diff>
  python pagediff.py decode  <baseline> <diff> <output>
  python pagediff.py info    <diff>
"""

import argparse
import base64
import binascii
import json
import mmap
import os
import re
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Tuple


DEFAULT_PAGE_SIZE = 512


def default_entire_page_threshold(page_size: int) -> int:
    """Half a page, rounded up."""
    return (page_size + 1) // 2


# ============================================================================
# Errors
# ============================================================================

class PageDiffError(ValueError):
    """Base class for errors raised by the page differ."""


class InvalidLengthError(PageDiffError):
    """A buffer length is not an exact multiple of the page size."""


class DecodeError(PageDiffError):
    """A commit payload is not valid for the codec that should decode it."""


# ============================================================================
# Payload codecs
#
# Commit payloads travel as text.  A codec is any object with a `name`,
# `encode(bytes) -> str` and `decode(str) -> bytes`; hex is the wire default.
# ============================================================================

class HexCodec:
    """Lowercase, even-length hexadecimal."""
    name = 'hex'
    _DIGITS = re.compile(r'[0-9a-fA-F]*')

    def encode(self, data) -> str:
        return bytes(data).hex()

    def decode(self, text: str) -> bytes:
        if (not isinstance(text, str) or len(text) % 2
                or not self._DIGITS.fullmatch(text)):
            raise DecodeError(f"invalid hex payload: {text!r:.40}")
        return bytes.fromhex(text)


class Base64Codec:
    """Standard base64 with padding; roughly 2/3 the size of hex."""
    name = 'base64'

    def encode(self, data) -> str:
        return base64.b64encode(bytes(data)).decode('ascii')

    def decode(self, text: str) -> bytes:
        try:
            return base64.b64decode(text, validate=True)
        except (binascii.Error, TypeError, ValueError) as e:
            raise DecodeError(f"invalid base64 payload: {text!r:.40}") from e


HEX = HexCodec()
BASE64 = Base64Codec()

CODECS = {
    'hex': HEX,
    'base64': BASE64,
}


# ============================================================================
# Diff values
#
# These mirror the wire shape, so a FileDiff unpacks and compares like the
# nested sequence it serialises to.
# ============================================================================

class PageCommit(NamedTuple):
    """Replace page[offset : offset + len(payload)] with the decoded payload."""
    offset: int
    data: str


class PageDiff(NamedTuple):
    """All commits for one changed page, ascending and non-overlapping."""
    page_index: int
    commits: Tuple[PageCommit, ...]


class FileDiff(NamedTuple):
    """Delta from a baseline to a target of `page_count` pages."""
    page_size: int
    page_count: int
    changes: Tuple[PageDiff, ...]


@dataclass(frozen=True)
class ExpandedCommit:
    """A commit with its payload decoded; `data_str` keeps the encoded form."""
    offset: int
    data: bytes
    data_str: str


@dataclass(frozen=True)
class ExpandedPageDiff:
    page_index: int
    commits: Tuple[ExpandedCommit, ...]


@dataclass(frozen=True)
class ExpandedFileDiff:
    page_size: int
    page_count: int
    changes: Tuple[ExpandedPageDiff, ...]


@dataclass
class DiffOptions:
    """Options for diff()."""
    page_size: int = DEFAULT_PAGE_SIZE
    entire_page_threshold: Optional[int] = None
    verbose: bool = False


# ============================================================================
# Differencing
# ============================================================================

def _get_page(data, page_size: int, page_index: int) -> Optional[bytes]:
    """Copy out page `page_index`, or None if data ends before it."""
    page_offset = page_index * page_size
    if page_offset >= len(data):
        return None
    return bytes(data[page_offset:page_offset + page_size])


def _full_page(page: bytes, codec) -> Tuple[PageCommit, ...]:
    return (PageCommit(0, codec.encode(page)),)


def _diff_page(base: bytes, target: bytes, entire_page_threshold: int,
               codec) -> Optional[Tuple[PageCommit, ...]]:
    """Commits turning `base` into `target`, or None if they are equal.

    Runs of mismatched bytes become one commit each.  Once the number of
    mismatched bytes seen reaches `entire_page_threshold` the partial list is
    dropped and the whole page is sent instead.
    """
    if base == target:
        return None

    commits: List[PageCommit] = []
    total_changes = 0
    run_start = None
    for i in range(len(target)):
        if total_changes >= entire_page_threshold:
            return _full_page(target, codec)
        if base[i] != target[i]:
            total_changes += 1
            if run_start is None:
                run_start = i
        elif run_start is not None:
            commits.append(PageCommit(run_start, codec.encode(target[run_start:i])))
            run_start = None
    if run_start is not None:
        commits.append(PageCommit(run_start, codec.encode(target[run_start:])))
    return tuple(commits)


def diff(baseline, target,
         page_size: int = DEFAULT_PAGE_SIZE,
         entire_page_threshold: Optional[int] = None,
         *, codec=HEX, verbose: bool = False,
         opts: DiffOptions = None) -> Optional[FileDiff]:
    """Compute the page diff that turns `baseline` into `target`.

    Both buffers must be a whole number of pages long.  Returns None when
    they are identical and the same length; a shrink with no byte changes in
    the retained pages still yields a FileDiff with an empty change list.
    """
    if opts is not None:
        page_size = opts.page_size
        entire_page_threshold = opts.entire_page_threshold
        verbose = opts.verbose
    if page_size < 1:
        raise ValueError("page size must be >= 1")
    if len(baseline) % page_size != 0 or len(target) % page_size != 0:
        raise InvalidLengthError(
            f"File size must be a multiple of page size {page_size}: "
            f"got {len(baseline)} and {len(target)} bytes")
    if entire_page_threshold is None:
        entire_page_threshold = default_entire_page_threshold(page_size)

    page_count = len(target) // page_size

    if verbose:
        print(f"diff: |B|={len(baseline):,}, |T|={len(target):,}, "
              f"page_size={page_size}, threshold={entire_page_threshold}, "
              f"codec={codec.name}",
              file=sys.stderr)

    changes: List[PageDiff] = []
    for page_index in range(page_count):
        target_page = _get_page(target, page_size, page_index)
        base_page = _get_page(baseline, page_size, page_index)
        if base_page is None:
            # Page past the end of the baseline: nothing to compare against.
            changes.append(PageDiff(page_index, _full_page(target_page, codec)))
            continue
        commits = _diff_page(base_page, target_page, entire_page_threshold, codec)
        if commits:
            changes.append(PageDiff(page_index, commits))

    if not changes and len(baseline) == len(target):
        if verbose:
            print("  result: identical", file=sys.stderr)
        return None

    result = FileDiff(page_size, page_count, tuple(changes))
    if verbose:
        _print_diff_stats(result, codec)
    return result


# ============================================================================
# Reconstruction — apply a diff to the baseline to recover the target
# ============================================================================

def apply_diff_to(buf, file_diff, *, codec=HEX) -> int:
    """Write every commit of `file_diff` into `buf`, already target-sized.

    `buf` may be a bytearray or a writable mmap.  Returns payload bytes written.
    """
    page_size, _page_count, changes = file_diff
    written = 0
    for page_index, commits in changes:
        page_offset = page_index * page_size
        for offset, data in commits:
            payload = codec.decode(data)
            start = page_offset + offset
            buf[start:start + len(payload)] = payload
            written += len(payload)
    return written


def apply_diff(baseline, file_diff, *, codec=HEX) -> bytearray:
    """Reconstruct the target from `baseline` and `file_diff`.

    A bytearray baseline that is already the target's length is patched in
    place and returned; anything else is copied into a new zero-filled buffer
    that is truncated or extended to page_count * page_size.
    """
    page_size, page_count, _changes = file_diff
    expected_length = page_count * page_size
    if isinstance(baseline, bytearray) and len(baseline) == expected_length:
        buf = baseline
    else:
        buf = bytearray(expected_length)
        n = min(len(baseline), expected_length)
        buf[:n] = baseline[:n]
    apply_diff_to(buf, file_diff, codec=codec)
    return buf


# ============================================================================
# Expansion — decode payloads for callers that want raw bytes
# ============================================================================

def expand_diff(file_diff, *, codec=HEX) -> Optional[ExpandedFileDiff]:
    """Decode every payload, keeping the encoded string alongside it."""
    if file_diff is None:
        return None
    page_size, page_count, changes = file_diff
    return ExpandedFileDiff(
        page_size=page_size,
        page_count=page_count,
        changes=tuple(
            ExpandedPageDiff(
                page_index=page_index,
                commits=tuple(
                    ExpandedCommit(offset=offset,
                                   data=codec.decode(data_str),
                                   data_str=data_str)
                    for offset, data_str in commits),
            )
            for page_index, commits in changes),
    )


# ============================================================================
# Wire form
#
#   [page_size, page_count, [[page_index, [[offset, data], ...]], ...]]
#
# Plain nested lists, ready for json.  The no-diff sentinel is None / null.
# Parsing decodes every payload with the codec so that each commit is known
# to cover at least one byte and to end inside its page.
# ============================================================================

def to_wire(file_diff: Optional[FileDiff]):
    """Convert a FileDiff to nested lists (None stays None)."""
    if file_diff is None:
        return None
    page_size, page_count, changes = file_diff
    return [page_size, page_count,
            [[page_index, [[offset, data] for offset, data in commits]]
             for page_index, commits in changes]]


def _uint(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"expected a non-negative integer, got {value!r}")
    return value


def from_wire(obj, *, codec=HEX) -> Optional[FileDiff]:
    """Parse nested lists back into a FileDiff, validating their shape."""
    if obj is None:
        return None
    try:
        page_size, page_count, raw_changes = obj
        page_size, page_count = _uint(page_size), _uint(page_count)
        if page_size < 1:
            raise ValueError("page size must be >= 1")
        changes = []
        prev_index = -1
        for page_index, raw_commits in raw_changes:
            page_index = _uint(page_index)
            if page_index <= prev_index or page_index >= page_count:
                raise ValueError(f"page index {page_index} out of order or range")
            prev_index = page_index
            commits = []
            for offset, data in raw_commits:
                offset = _uint(offset)
                if offset >= page_size or not isinstance(data, str):
                    raise ValueError(f"bad commit at page {page_index}")
                n = len(codec.decode(data))
                if n == 0 or offset + n > page_size:
                    raise ValueError(f"commit at page {page_index} offset {offset} "
                                     f"of {n} bytes does not fit the page")
                commits.append(PageCommit(offset, data))
            changes.append(PageDiff(page_index, tuple(commits)))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Not a page diff: {e}") from e
    return FileDiff(page_size, page_count, tuple(changes))


def dumps(file_diff: Optional[FileDiff]) -> str:
    """Serialise a diff (or None) to compact JSON."""
    return json.dumps(to_wire(file_diff), separators=(',', ':'))


def loads(text: str, *, codec=HEX) -> Optional[FileDiff]:
    """Parse JSON produced by dumps()."""
    try:
        obj = json.loads(text)
    except ValueError as e:
        raise ValueError(f"Not a page diff: {e}") from e
    return from_wire(obj, codec=codec)


# ============================================================================
# Summaries
# ============================================================================

def diff_summary(file_diff: FileDiff, *, codec=HEX) -> dict:
    """Return summary statistics for a diff."""
    page_size, page_count, changes = file_diff
    num_commits = 0
    num_full_pages = 0
    payload_bytes = 0
    for _page_index, commits in changes:
        num_commits += len(commits)
        for offset, data in commits:
            n = len(codec.decode(data))
            payload_bytes += n
            if offset == 0 and n == page_size:
                num_full_pages += 1
    return {
        'page_size': page_size,
        'page_count': page_count,
        'pages_changed': len(changes),
        'full_pages': num_full_pages,
        'num_commits': num_commits,
        'payload_bytes': payload_bytes,
        'target_size': page_size * page_count,
    }


def _print_diff_stats(file_diff: FileDiff, codec) -> None:
    """Print verbose statistics for diff() output."""
    stats = diff_summary(file_diff, codec=codec)
    payload_pct = (stats['payload_bytes'] / stats['target_size'] * 100
                   if stats['target_size'] else 0)
    print(f"  result: {stats['pages_changed']}/{stats['page_count']} pages changed, "
          f"{stats['full_pages']} full pages, {stats['num_commits']} commits\n"
          f"  result: payload {stats['payload_bytes']} bytes "
          f"({payload_pct:.1f}% of target)",
          file=sys.stderr)


# ============================================================================
# Buffer helpers
# ============================================================================

def pad_to_page_size(data, page_size: int = DEFAULT_PAGE_SIZE) -> bytes:
    """Zero-fill `data` up to the next multiple of `page_size`."""
    if page_size < 1:
        raise ValueError("page size must be >= 1")
    size = -(-len(data) // page_size) * page_size
    return bytes(data) + bytes(size - len(data))


@contextmanager
def mmap_open(path):
    """Memory-map a file for reading.  Yields b'' for empty files."""
    size = os.path.getsize(path)
    if size == 0:
        yield b""
    else:
        with open(path, 'rb') as f:
            mm = mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ)
            try:
                yield mm
            finally:
                mm.close()


@contextmanager
def mmap_create(path, size):
    """Create a zero-filled file of `size` bytes mapped read-write.

    Yields a writable mmap object (or empty bytearray for size=0).
    """
    if size == 0:
        with open(path, 'wb'):
            pass
        yield bytearray()
    else:
        with open(path, 'wb') as f:
            f.truncate(size)
        with open(path, 'r+b') as f:
            mm = mmap.mmap(f.fileno(), size)
            try:
                yield mm
            finally:
                mm.flush()
                mm.close()


# ============================================================================
# CLI helpers
# ============================================================================

def _parse_size_suffix(s: str) -> int:
    """Parse a size string with optional k/M suffix (binary multipliers)."""
    s = s.strip()
    if not s:
        raise argparse.ArgumentTypeError("empty size value")
    multipliers = {'k': 1 << 10, 'K': 1 << 10, 'm': 1 << 20, 'M': 1 << 20}
    try:
        if s[-1] in multipliers:
            return int(s[:-1]) * multipliers[s[-1]]
        return int(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid size: {s!r}")


def _print_summary(stats: dict) -> None:
    print(f"Page size:    {stats['page_size']:,} bytes")
    print(f"Pages:        {stats['pages_changed']} of {stats['page_count']} changed")
    print(f"Full pages:   {stats['full_pages']}")
    print(f"Commits:      {stats['num_commits']}")
    print(f"Payload:      {stats['payload_bytes']:,} bytes")
    print(f"Target size:  {stats['target_size']:,} bytes")


def _read_diff(path: str) -> Optional[FileDiff]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return loads(f.read())
    except ValueError as e:
        raise SystemExit(f"error: {path}: {e}")


# ============================================================================
# CLI
# ============================================================================

def cmd_encode(args):
    if args.page_size < 1:
        raise SystemExit("error: --page-size must be >= 1")
    if args.threshold is not None and args.threshold < 0:
        raise SystemExit("error: --threshold must be >= 0")
    opts = DiffOptions(
        page_size=args.page_size,
        entire_page_threshold=args.threshold,
        verbose=args.verbose,
    )

    with mmap_open(args.baseline) as B, mmap_open(args.target) as T:
        if args.pad:
            B = pad_to_page_size(B, args.page_size)
            T = pad_to_page_size(T, args.page_size)
        t0 = time.time()
        try:
            file_diff = diff(B, T, opts=opts)
        except InvalidLengthError as e:
            raise SystemExit(f"error: {e} (use --pad to zero-fill)")
        elapsed = time.time() - t0
        base_size, target_size = len(B), len(T)

    text = dumps(file_diff)
    with open(args.diff, 'w', encoding='ascii') as f:
        f.write(text)

    print(f"Baseline:     {args.baseline} ({base_size:,} bytes)")
    print(f"Target:       {args.target} ({target_size:,} bytes)")
    print(f"Diff:         {args.diff} ({len(text):,} bytes)")
    if file_diff is None:
        print("Changes:      none (identical)")
    else:
        _print_summary(diff_summary(file_diff))
        ratio = len(text) / target_size if target_size else 0
        print(f"Ratio:        {ratio:.4f} (diff/target)")
    print(f"Time:         {elapsed:.3f}s")


def cmd_decode(args):
    file_diff = _read_diff(args.diff)

    with mmap_open(args.baseline) as B:
        t0 = time.time()
        if file_diff is None:
            output_size = len(B)
            with open(args.output, 'wb') as f:
                f.write(B)
        else:
            page_size, page_count, _changes = file_diff
            output_size = page_size * page_count
            try:
                with mmap_create(args.output, output_size) as buf:
                    n = min(len(B), output_size)
                    buf[:n] = B[:n]
                    apply_diff_to(buf, file_diff)
            except (IndexError, ValueError) as e:
                # Don't leave a half-written target behind.
                os.remove(args.output)
                raise SystemExit(f"error: {args.diff}: {e}")
        elapsed = time.time() - t0
        base_size = len(B)

    if file_diff is None:
        print("warning: diff is empty; baseline copied unchanged", file=sys.stderr)
    print(f"Baseline:     {args.baseline} ({base_size:,} bytes)")
    print(f"Diff:         {args.diff}")
    print(f"Output:       {args.output} ({output_size:,} bytes)")
    print(f"Time:         {elapsed:.3f}s")


def cmd_info(args):
    file_diff = _read_diff(args.diff)

    print(f"Diff file:    {args.diff} ({os.path.getsize(args.diff):,} bytes)")
    if file_diff is None:
        print("Changes:      none (identical)")
        return
    _print_summary(diff_summary(file_diff))


def main(argv=None):
    ap = argparse.ArgumentParser(
        description='Page-aligned binary diff')
    sub = ap.add_subparsers(dest='command')

    # encode
    enc = sub.add_parser('encode', help='Compute page diff')
    enc.add_argument('baseline', help='Baseline file')
    enc.add_argument('target', help='Target file')
    enc.add_argument('diff', help='Output diff file (JSON)')
    enc.add_argument('--page-size', type=_parse_size_suffix,
                     default=DEFAULT_PAGE_SIZE, metavar='N',
                     help=f'Page size in bytes, k/M suffix allowed '
                          f'(default: {DEFAULT_PAGE_SIZE})')
    enc.add_argument('--threshold', type=int, default=None, metavar='N',
                     help='Changed bytes after which a whole page is sent '
                          '(default: half a page)')
    enc.add_argument('--pad', action='store_true',
                     help='Zero-fill inputs to a page boundary')
    enc.add_argument('--verbose', action='store_true',
                     help='Print diagnostic messages to stderr')
    enc.set_defaults(func=cmd_encode)

    # decode
    dec = sub.add_parser('decode', help='Reconstruct target from diff')
    dec.add_argument('baseline', help='Baseline file')
    dec.add_argument('diff', help='Diff file (JSON)')
    dec.add_argument('output', help='Output (reconstructed target) file')
    dec.set_defaults(func=cmd_decode)

    # info
    inf = sub.add_parser('info', help='Show diff file statistics')
    inf.add_argument('diff', help='Diff file (JSON)')
    inf.set_defaults(func=cmd_info)

    args = ap.parse_args(argv)
    if args.command is None:
        ap.print_help()
        sys.exit(1)
    args.func(args)


# ============================================================================

if __name__ == '__main__':
    main()
