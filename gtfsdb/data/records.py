from dataclasses import dataclass
from typing import Dict, Iterator, Sequence, Tuple


@dataclass(frozen=True)
class Record:
    """One row read back from a store table: ordered column names and string values."""

    columns: Tuple[str, ...]
    values: Tuple[str, ...]

    @classmethod
    def from_row(cls, columns: Sequence[str], row: Sequence) -> "Record":
        values = tuple("" if v is None else str(v) for v in row)
        return cls(tuple(columns), values)

    def get(self, column: str, default: str = "") -> str:
        try:
            return self.values[self.columns.index(column)]
        except ValueError:
            return default

    def items(self) -> Iterator[Tuple[str, str]]:
        return zip(self.columns, self.values)

    def as_dict(self) -> Dict[str, str]:
        return dict(self.items())

    def __repr__(self):
        return f"<Record({', '.join(f'{k}={v!r}' for k, v in self.items())})>"
