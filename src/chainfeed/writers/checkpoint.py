"""Write immutable tick checkpoint Parquet files."""

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List

import pyarrow as pa
import pyarrow.parquet as pq

# Fields:
#   instrument_key - Vendor instrument key (e.g. NSE_FO|43885)
#   ltp            - Last traded price
#   spot           - Underlying spot when the subscription was resolved
#   ts_observed    - Frame timestamp (ms since epoch)
#   ts_recv        - Local sink receive timestamp (ms since epoch)
TICK_SCHEMA = pa.schema([
    pa.field("instrument_key", pa.string(), nullable=False),
    pa.field("ltp", pa.float64(), nullable=False),
    pa.field("spot", pa.float64(), nullable=True),
    pa.field("ts_observed", pa.int64(), nullable=False),
    pa.field("ts_recv", pa.int64(), nullable=False),
])


def rows_to_table(rows: List[dict]) -> pa.Table:
    """Convert sink rows to an Arrow table with the fixed tick schema."""
    return pa.Table.from_pylist(rows, schema=TICK_SCHEMA)


def write_checkpoint(
    base_dir: Path,
    underlying: str,
    date: str,
    hour: int,
    rows: List[dict],
) -> Path:
    """
    Write an immutable checkpoint Parquet file.
    
    Args:
        base_dir: Tick data root directory
        underlying: Underlying symbol (partition)
        date: UTC date (YYYY-MM-DD)
        hour: UTC hour (0-23)
        rows: Tick rows
    
    Returns:
        Path to the written checkpoint file
    """
    if not rows:
        raise ValueError("Cannot write empty checkpoint")
    
    # <base>/underlying=.../date=.../hour=.../checkpoint-*.parquet
    checkpoint_dir = base_dir / f"underlying={underlying}" / f"date={date}" / f"hour={hour:02d}"
    checkpoint_dir.mkdir(parents=True, exist_ok=True)
    
    now = datetime.now(timezone.utc)
    timestamp = now.strftime("%Y%m%d%H-%M%S")
    unique_id = str(uuid.uuid4())[:8]
    checkpoint_path = checkpoint_dir / f"checkpoint-{timestamp}-{unique_id}.parquet"
    
    pq.write_table(
        rows_to_table(rows),
        checkpoint_path,
        compression="snappy",
        use_dictionary=False,
    )
    return checkpoint_path
