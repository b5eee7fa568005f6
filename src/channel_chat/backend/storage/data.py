import base64
import json
import logging
import uuid
from pathlib import PurePath
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from ..config import DEFAULT_NUMERIC_RATIO_THRESHOLD
from ..models import ChannelData
from ..tools.csv_tools import build_slim_csv, compute_dataset_summary, enrich_with_engagement
from ..tools.tabular import Row, parse_csv_text

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 50 * 1024 * 1024  # 50 MB cap


class CsvRecord:
    """An uploaded CSV, parsed and prepared once at upload time."""

    kind = "csv"

    def __init__(self, file_id: str, name: str, raw: bytes, columns: List[str], rows: List[Row],
                 summary: str, slim_csv: str):
        self.file_id = file_id
        self.name = name
        self.size = len(raw)
        self.raw = raw
        self.columns = columns
        self.rows = rows
        self.summary = summary
        self.slim_csv = slim_csv

    @property
    def base64(self) -> str:
        return base64.b64encode(self.raw).decode("ascii")

    def to_meta(self) -> dict:
        return {
            "file_id": self.file_id,
            "name": self.name,
            "size": self.size,
            "kind": self.kind,
            "n_rows": len(self.rows),
            "n_cols": len(self.columns),
            "columns": self.columns,
        }


class ChannelRecord:
    """An uploaded channel JSON document."""

    kind = "channel"

    def __init__(self, file_id: str, name: str, size: int, data: ChannelData):
        self.file_id = file_id
        self.name = name
        self.size = size
        self.data = data
        self.videos = data.video_dicts()

    def to_meta(self) -> dict:
        return {
            "file_id": self.file_id,
            "name": self.name,
            "size": self.size,
            "kind": self.kind,
            "channel_id": self.data.channel_id,
            "n_videos": len(self.videos),
            "fields": list(self.videos[0].keys()) if self.videos else [],
        }


FileRecord = Union[CsvRecord, ChannelRecord]


def load_csv(name: str, raw: bytes, numeric_threshold: float = DEFAULT_NUMERIC_RATIO_THRESHOLD) -> CsvRecord:
    text = raw.decode("utf-8-sig", errors="replace")
    columns, rows = parse_csv_text(text)
    if not columns:
        raise ValueError("CSV needs a header row and at least one data row")
    rows, columns = enrich_with_engagement(rows, columns)
    summary = compute_dataset_summary(rows, columns, numeric_threshold)
    slim = build_slim_csv(rows, columns)
    logger.info(f"Loaded CSV {name!r}: {len(rows)} rows, {len(columns)} columns, slim={len(slim)} chars")
    return CsvRecord("", name, raw, columns, rows, summary, slim)


def load_channel(name: str, raw: bytes) -> ChannelRecord:
    try:
        doc = json.loads(raw.decode("utf-8-sig"))
        data = ChannelData.model_validate(doc)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Failed to parse JSON: {e}") from e
    except ValidationError as e:
        raise ValueError(f'Channel JSON must contain a "videos" array: {e.error_count()} validation error(s)') from e
    logger.info(f"Loaded channel JSON {name!r}: {len(data.videos)} videos")
    return ChannelRecord("", name, len(raw), data)


class DataMemory:
    """Ephemeral in-process store for uploaded CSV and channel files."""

    def __init__(self, numeric_threshold: float = DEFAULT_NUMERIC_RATIO_THRESHOLD):
        self.files: Dict[str, FileRecord] = {}
        self.numeric_threshold = numeric_threshold

    def add_file(self, name: str, raw: bytes) -> dict:
        if len(raw) > MAX_FILE_BYTES:
            raise ValueError(f"File too large ({len(raw)} bytes > {MAX_FILE_BYTES})")
        suffix = PurePath(name).suffix.lower()
        if suffix == ".csv":
            rec: FileRecord = load_csv(name, raw, self.numeric_threshold)
        elif suffix == ".json":
            rec = load_channel(name, raw)
        else:
            raise ValueError(f"Unsupported file type {suffix or '(none)'}; upload a .csv or .json file")

        # Re-uploading a file with the same name replaces it under the same id
        existing = next((fid for fid, r in self.files.items() if r.name == name), None)
        rec.file_id = existing or uuid.uuid4().hex[:8]
        self.files[rec.file_id] = rec
        return rec.to_meta()

    def list_files(self) -> List[dict]:
        return [rec.to_meta() for rec in self.files.values()]

    def remove_file(self, file_id: str) -> bool:
        return self.files.pop(file_id, None) is not None

    def get(self, file_id: str) -> FileRecord:
        if file_id not in self.files:
            raise KeyError(f"Unknown file_id: {file_id}")
        return self.files[file_id]

    def get_csv(self, file_id: Optional[str]) -> Optional[CsvRecord]:
        if not file_id:
            return None
        rec = self.get(file_id)
        if not isinstance(rec, CsvRecord):
            raise KeyError(f"File {file_id} is not a CSV")
        return rec

    def get_channel(self, file_id: Optional[str]) -> Optional[ChannelRecord]:
        if not file_id:
            return None
        rec = self.get(file_id)
        if not isinstance(rec, ChannelRecord):
            raise KeyError(f"File {file_id} is not a channel JSON")
        return rec
