"""Parse CSV uploads into flat attribute rows.

Uses pandas with a header row and typed-cell inference. Geometry is resolved
later from either a ``geometry_coordinates`` column (JSON geometry literal) or
``longitude``/``latitude`` columns. All other columns are ignored by the
normalizer.
"""

from __future__ import annotations

import io

import pandas as pd

from citylayers.errors import ParseFailure, ParseFailureReason
from citylayers.layers.geometry import frame_records
from citylayers.layers.normalizer import RawRow


def parse_csv(content: bytes | str, filename: str = "upload.csv") -> list[RawRow]:
    """Parse CSV content into flat RawRows.

    Args:
        content: Raw file bytes or decoded text.
        filename: Used in error messages.

    Returns:
        One RawRow per non-empty data row.

    Raises:
        ParseFailure: The file has no header or cannot be tokenized.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")

    try:
        frame = pd.read_csv(io.BytesIO(content), skip_blank_lines=True, encoding="utf-8-sig")
    except pd.errors.EmptyDataError as e:
        raise ParseFailure(
            f"No data found in {filename}",
            reason=ParseFailureReason.NO_LAYERS,
            filename=filename,
        ) from e
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise ParseFailure(
            f"Invalid file format: {filename} could not be read as CSV ({e})",
            reason=ParseFailureReason.MALFORMED,
            filename=filename,
        ) from e

    return rows_from_frame(frame)


def rows_from_frame(frame: pd.DataFrame) -> list[RawRow]:
    """Materialize a DataFrame into flat RawRows (shared with Parquet)."""
    frame.columns = [str(c).strip() for c in frame.columns]
    frame = frame.dropna(how="all")
    return [
        RawRow(geometry=None, attributes=record, carry_attributes=False)
        for record in frame_records(frame)
    ]
