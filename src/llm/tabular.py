from __future__ import annotations

import csv
import io
from typing import Any, Callable, Dict, List, TypeVar

T = TypeVar("T")


def make_tsv_parser(
    factory: Callable[..., T], delimiter: str = "\t"
) -> Callable[[str], List[T]]:
    """
    Build a parser for ``generate_csv_response``.

    The first row is the header; every following row is passed to ``factory``
    as keyword arguments. Rows with a wrong field count raise ``ValueError``
    so the message can be fed back to the model.
    """

    def parse(text: str) -> List[T]:
        reader = csv.DictReader(io.StringIO(text.strip()), delimiter=delimiter)
        if not reader.fieldnames:
            raise ValueError("missing header row")
        expected = len(reader.fieldnames)
        records: List[T] = []
        for line_no, row in enumerate(reader, start=2):
            if None in row:
                raise ValueError(f"line {line_no}: more than {expected} fields")
            if any(value is None for value in row.values()):
                raise ValueError(f"line {line_no}: fewer than {expected} fields")
            fields: Dict[str, Any] = {key.strip(): value.strip() for key, value in row.items()}
            records.append(factory(**fields))
        return records

    return parse
