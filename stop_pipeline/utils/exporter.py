"""
Stop list export to CSV or Excel.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Union

import pandas as pd

logger = logging.getLogger(__name__)

# Leading columns of an export; passthrough columns follow in sheet order
EXPORT_COLUMNS = [
    "corrected_address", "complement", "latitude", "longitude", "status",
    "sequence", "package_count", "learned", "note",
    "neighborhood", "city", "state",
]


def write_records(records: List[Dict[str, Any]], output_path: Union[str, Path]) -> int:
    """Write flat records to .csv or .xlsx, chosen by file suffix.

    Args:
        records: Flat dicts, e.g. from Stop.to_record()
        output_path: Destination file

    Returns:
        Number of records written
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    df = pd.DataFrame.from_records(records)
    leading = [column for column in EXPORT_COLUMNS if column in df.columns]
    trailing = [column for column in df.columns if column not in EXPORT_COLUMNS]
    if records:
        df = df[leading + trailing]
    else:
        df = pd.DataFrame(columns=EXPORT_COLUMNS)

    ext = output_path.suffix.lower()
    if ext == '.csv':
        df.to_csv(output_path, index=False)
    elif ext == '.xlsx':
        df.to_excel(output_path, index=False, engine='openpyxl')
    else:
        raise ValueError(f"Unsupported export format: {ext}")

    logger.info(f"Exported {len(records)} records to {output_path}")
    return len(records)
