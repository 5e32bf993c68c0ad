"""
CSV output: one semicolon-delimited file per category, grouped by run date.

    data/2024-03-01/freshfood.csv
    data/2024-03-01/chilled&frozen.csv
"""

import csv
import io
import re
from datetime import date
from pathlib import Path
from typing import List, Optional, Sequence

import aiofiles

from config import CSV_DELIMITER, CSV_NEWLINE, FILE_ENCODING, OUTPUT_DIR

# CSV header for output files
CSV_HEADER = ["Product Id", "Name", "Cost", "Quantity", "Url", "Category"]


def category_slug(label: str) -> str:
    """File name stem for a category label: lowercased, no whitespace, no path separators."""
    slug = re.sub(r"\s+", "", label.strip().lower())
    return slug.replace("/", "-").replace("\\", "-") or "category"


def map_to_output_row(record) -> List[str]:
    """Map a ProductRecord to the output column order."""
    return [record.pid, record.name, record.cost, record.quantity, record.url, record.category]


def render_csv(records: Sequence) -> str:
    """Build the file content in memory: header plus one line per record."""
    output = io.StringIO()
    writer = csv.writer(output, delimiter=CSV_DELIMITER, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    writer.writerows(map_to_output_row(r) for r in records)
    return output.getvalue()


class CsvSink:
    """Writes each category's records to `<output_dir>/<run date>/<slug>.csv`."""

    def __init__(self, output_dir: Path = OUTPUT_DIR, run_date: Optional[date] = None):
        self.output_dir = Path(output_dir)
        self.run_date = run_date or date.today()

    @property
    def run_dir(self) -> Path:
        return self.output_dir / self.run_date.isoformat()

    def path_for(self, label: str) -> Path:
        return self.run_dir / f"{category_slug(label)}.csv"

    async def write_category(self, label: str, records: Sequence) -> Path:
        """Write (overwrite) the file for one category and return its path."""
        file_path = self.path_for(label)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(file_path, mode="w", encoding=FILE_ENCODING, newline=CSV_NEWLINE) as f:
            await f.write(render_csv(records))

        return file_path
