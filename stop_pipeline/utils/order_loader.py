"""
Order spreadsheet loader.

Reads CSV/Excel delivery sheets and maps their columns onto OrderRow fields
by case-insensitive synonym matching ("Endereço", "address", "Rua"...).
Columns that map to no field are carried through untouched in OrderRow.extra.
"""

import logging
import math
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from stop_pipeline.cache.models import OrderRow
from stop_pipeline.core.address_normalizer import fold_text
from stop_pipeline.errors import EmptyBatchError, MissingColumnError

logger = logging.getLogger(__name__)

# Field name -> column name synonyms, matched against folded column names.
# Short synonyms must match a whole word; longer ones match as substrings.
COLUMN_SYNONYMS = {
    'address': ['endereco', 'address', 'logradouro', 'rua'],
    'latitude': ['latitude', 'lat'],
    'longitude': ['longitude', 'lng', 'lon'],
    'neighborhood': ['bairro', 'neighborhood', 'neighbourhood'],
    'city': ['cidade', 'city', 'municipio'],
    'state': ['estado', 'state', 'uf'],
    'sequences': ['sequence', 'sequencia', 'pacote', 'package'],
}

_SHORT_SYNONYM_LENGTH = 3


def _column_matches(column: str, synonym: str) -> bool:
    folded = fold_text(column)
    if len(synonym) <= _SHORT_SYNONYM_LENGTH:
        return synonym in re.split(r"[^a-z0-9]+", folded)
    return synonym in folded


def _clean_value(value: Any) -> Any:
    """Turn pandas missing markers into None."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is pd.NaT:
        return None
    return value


class OrderLoader:
    """Loads order rows from CSV/Excel spreadsheets."""

    SUPPORTED_EXTENSIONS = {'.csv', '.xlsx', '.xls'}

    def __init__(self, column_synonyms: Optional[Dict[str, List[str]]] = None):
        """Initialize order loader.

        Args:
            column_synonyms: Override of the field -> synonyms table
        """
        self.column_synonyms = column_synonyms or COLUMN_SYNONYMS

    def load(self, path: Union[str, Path]) -> List[OrderRow]:
        """Load a spreadsheet into order rows.

        Args:
            path: Path to a CSV or Excel file

        Returns:
            List of OrderRow in sheet order

        Raises:
            FileNotFoundError: If path doesn't exist
            ValueError: If file format not supported
            EmptyBatchError: If the sheet has no data rows
            MissingColumnError: If no address column can be found
        """
        df = self.read_frame(path)
        return self.rows_from_frame(df, source=str(path))

    def read_frame(self, path: Union[str, Path]) -> pd.DataFrame:
        """Read a single sheet (CSV or Excel) as text columns.

        Args:
            path: Path to order file

        Returns:
            DataFrame with order data
        """
        path = Path(path)

        if not path.exists():
            raise FileNotFoundError(f"Order file not found: {path}")

        ext = path.suffix.lower()

        # Coordinates like "-23,550520" must survive as text
        if ext == '.csv':
            df = pd.read_csv(path, dtype=str, sep=self._guess_delimiter(path))
        elif ext in {'.xlsx', '.xls'}:
            df = pd.read_excel(path, dtype=str)
        else:
            raise ValueError(f"Unsupported file format: {ext}")

        logger.info(f"Loaded {len(df)} row(s) from {path.name}")
        return df

    @staticmethod
    def _guess_delimiter(path: Path) -> str:
        """Semicolon-separated sheets are common in Brazilian exports."""
        with open(path, 'r', encoding='utf-8-sig', errors='replace') as f:
            header = f.readline()
        return ';' if header.count(';') > header.count(',') else ','

    def find_columns(self, columns: List[str]) -> Dict[str, str]:
        """Map OrderRow fields to sheet columns.

        Each column is claimed by at most one field, in synonym-table order.

        Args:
            columns: Column names of the sheet

        Returns:
            Dict of field name -> column name for the fields found
        """
        mapping: Dict[str, str] = {}
        claimed = set()

        for field_name, synonyms in self.column_synonyms.items():
            for synonym in synonyms:
                match = next(
                    (
                        column for column in columns
                        if column not in claimed and _column_matches(str(column), synonym)
                    ),
                    None,
                )
                if match is not None:
                    mapping[field_name] = match
                    claimed.add(match)
                    break

        logger.debug(f"Column mapping: {mapping}")
        return mapping

    def rows_from_frame(self, df: pd.DataFrame, source: str = "input") -> List[OrderRow]:
        """Convert a DataFrame into order rows.

        When the sheet has no sequence column, each row counts as one
        package identified by its row number.

        Args:
            df: Sheet data
            source: Name used in error messages

        Returns:
            List of OrderRow

        Raises:
            EmptyBatchError: If df has no rows
            MissingColumnError: If no address column can be found
        """
        if df is None or df.empty:
            raise EmptyBatchError(f"No order rows found in {source}")

        columns = [str(column) for column in df.columns]
        df = df.rename(columns=dict(zip(df.columns, columns)))

        mapping = self.find_columns(columns)
        if 'address' not in mapping:
            raise MissingColumnError(
                f"Address column not found in {source}",
                details={"columns": columns},
            )

        mapped_columns = set(mapping.values())
        passthrough = [column for column in columns if column not in mapped_columns]

        rows = []
        for position, record in enumerate(df.to_dict(orient='records'), start=1):
            fields = {
                field_name: _clean_value(record.get(column))
                for field_name, column in mapping.items()
            }
            if 'sequences' not in mapping:
                fields['sequences'] = [str(position)]

            rows.append(OrderRow(
                row_number=position,
                extra={column: _clean_value(record.get(column)) for column in passthrough},
                **fields,
            ))

        missing = [name for name in self.column_synonyms if name not in mapping]
        if missing:
            logger.info(f"Columns not found in {source}: {', '.join(missing)}")

        return rows
