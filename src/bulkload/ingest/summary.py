from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class StopReason(str, Enum):
    END_OF_INPUT = "END_OF_INPUT"
    ROW_LIMIT = "ROW_LIMIT"
    PARSE_QUOTA = "PARSE_QUOTA"             # PARSE_ERRORS exceeded
    DUPLICATE_QUOTA = "DUPLICATE_QUOTA"     # DUPLICATE_ERRORS exceeded


@dataclass(frozen=True)
class LoadResult:
    """Schema for all summary data a load reports."""
    table_name: str
    input_path: str
    rows_loaded: int
    rows_skipped: int           # parse errors + duplicate errors + records skipped by SKIP
    parse_errors: int
    duplicate_errors: int
    parser_skipped: int
    stop_reason: StopReason
    logfile: str
    parse_badfile: str
    duplicate_badfile: str

    @property
    def succeeded(self) -> bool:
        """Quota stops are reported, not raised, and count as failed loads."""
        return self.stop_reason not in (StopReason.PARSE_QUOTA, StopReason.DUPLICATE_QUOTA)

    def render_one_line(self) -> str:
        """How the summary is formatted for the terminal."""
        return (
            f"{self.table_name}: loaded={self.rows_loaded} skipped={self.rows_skipped} "
            f"parse_errors={self.parse_errors} duplicate_errors={self.duplicate_errors} "
            f"stop={self.stop_reason.value}"
        )

    def render_log(self) -> list[str]:
        """Closing lines of the load log."""
        lines = [
            f"{self.parser_skipped} Rows skipped.",
            f"{self.rows_loaded} Rows successfully loaded.",
            f"{self.parse_errors} Rows not loaded due to parse errors.",
            f"{self.duplicate_errors} Rows with unique key conflicts.",
        ]
        if self.stop_reason is StopReason.ROW_LIMIT:
            lines.append("Load stopped at the LOAD row limit.")
        return lines
