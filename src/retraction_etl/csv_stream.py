"""retraction_etl.csv_stream

Streaming CSV decoding for the Retraction Watch feed.

The feed arrives as arbitrary network chunks, so a quoted field (and the
commas or newlines inside it) may be split across reads.  CsvRowDecoder
carries its quote state between feed() calls and only emits a row once its
terminating newline has been seen outside quotes.  Rows are emitted as raw
text with their quoting intact; split_row() then tokenizes a single
assembled row.

Usage:
    decoder = CsvRowDecoder()
    for chunk in chunks:
        for row_text in decoder.feed(chunk):
            cells = split_row(row_text)
    for row_text in decoder.finish():
        ...
"""

from __future__ import annotations

import codecs
from collections.abc import Iterable, Iterator


# ---------------------------------------------------------------------------
# Row decoder
# ---------------------------------------------------------------------------

class CsvRowDecoder:
    """Quote-aware, chunk-boundary-safe splitter of text into logical rows."""

    def __init__(self) -> None:
        self._buf: list[str] = []
        self._in_quotes = False
        self._pending_cr = False

    @property
    def in_quotes(self) -> bool:
        return self._in_quotes

    def feed(self, text: str) -> list[str]:
        """Consume a chunk of text and return every row it completes."""
        rows: list[str] = []
        for char in text:
            if self._pending_cr:
                self._pending_cr = False
                if char == "\n":
                    continue

            if char == '"':
                # A doubled quote inside a quoted field toggles twice and
                # leaves the state unchanged; both characters stay in the row.
                self._in_quotes = not self._in_quotes
                self._buf.append(char)
                continue

            if not self._in_quotes and char in ("\n", "\r"):
                if char == "\r":
                    self._pending_cr = True
                rows.append("".join(self._buf))
                self._buf = []
                continue

            self._buf.append(char)
        return rows

    def finish(self) -> list[str]:
        """Flush a trailing row that had no terminating newline."""
        self._pending_cr = False
        if not self._buf:
            return []
        row = "".join(self._buf)
        self._buf = []
        return [row]


def decode_stream(chunks: Iterable[bytes], encoding: str = "utf-8-sig") -> Iterator[str]:
    """Yield logical CSV rows from an iterable of raw byte chunks.

    Bytes are decoded incrementally so a multi-byte character split across
    chunks is reassembled; invalid sequences become U+FFFD.
    """
    text_decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    rows = CsvRowDecoder()
    for chunk in chunks:
        if not chunk:
            continue
        yield from rows.feed(text_decoder.decode(chunk))
    tail = text_decoder.decode(b"", final=True)
    if tail:
        yield from rows.feed(tail)
    yield from rows.finish()


# ---------------------------------------------------------------------------
# Row tokenizer
# ---------------------------------------------------------------------------

def split_row(row_text: str) -> list[str]:
    """Split one assembled CSV row into trimmed cell values.

    Commas inside quotes are literal and a doubled quote inside a quoted
    field becomes a single quote character.
    """
    cells: list[str] = []
    current: list[str] = []
    in_quotes = False
    i = 0
    n = len(row_text)
    while i < n:
        char = row_text[i]
        if char == '"':
            if in_quotes and i + 1 < n and row_text[i + 1] == '"':
                current.append('"')
                i += 2
                continue
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            cells.append("".join(current))
            current = []
        else:
            current.append(char)
        i += 1
    cells.append("".join(current))
    return [c.strip() for c in cells]


def iter_csv_records(rows: Iterable[str]) -> Iterator[tuple[int, dict[str, str]]]:
    """Zip each data row with the header row.

    The first non-blank row is the header.  Yields (row_number, record) where
    row_number counts data rows from 1.  Missing trailing cells become "";
    cells beyond the header are ignored.
    """
    columns: list[str] | None = None
    row_number = 0
    for row_text in rows:
        if not row_text.strip():
            continue
        cells = split_row(row_text)
        if columns is None:
            columns = cells
            continue
        row_number += 1
        record = {
            col: (cells[idx] if idx < len(cells) else "")
            for idx, col in enumerate(columns)
        }
        yield row_number, record
