"""
Durable artifacts shared by the analysis run and the later update run.

analysisResults.json : {file_name: AnalysisResult}
updatePlan.json      : [UpdatePlanItem]
updateStats.json     : UpdateStats
fetchedData.json     : {report_type: [record as fetched]}
"""

import json
import logging
import shutil
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

from exception_models import AnalysisResult, UpdatePlanItem, UpdateStats

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder for Decimal (DynamoDB numbers), set and datetime objects."""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return int(obj) if obj % 1 == 0 else float(obj)
        if isinstance(obj, set):
            return list(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def safe_json_dumps(data: Any, indent: int = 2) -> str:
    """Safely serialize data to JSON string."""
    return json.dumps(data, indent=indent, cls=DecimalEncoder, ensure_ascii=False)


def _write_json(path: PathLike, data: Any) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        f.write(safe_json_dumps(data))
    return path


def write_analysis_results(path: PathLike, results: Mapping[str, AnalysisResult]) -> Path:
    written = _write_json(path, {name: result.to_dict() for name, result in results.items()})
    logger.info(f"AI analysis results written to {written}")
    return written


def read_analysis_results(path: PathLike) -> Dict[str, AnalysisResult]:
    """Load analysis results. Raises FileNotFoundError if the analysis run never happened."""
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"{path} does not contain an analysis results mapping")
    return {name: AnalysisResult.from_dict(name, data) for name, data in raw.items()}


def write_update_plan(path: PathLike, plan: List[UpdatePlanItem]) -> Path:
    written = _write_json(path, [item.to_dict() for item in plan])
    logger.info(f"Update plan written to {written} ({len(plan)} item(s)) - review before applying")
    return written


def read_update_plan(path: PathLike) -> List[UpdatePlanItem]:
    with Path(path).open("r", encoding="utf-8") as f:
        return [UpdatePlanItem.from_dict(item) for item in json.load(f)]


def write_fetched_data(path: PathLike, fetched: Mapping[str, List[Mapping[str, Any]]]) -> Path:
    written = _write_json(path, {report_type: list(items) for report_type, items in fetched.items()})
    total = sum(len(items) for items in fetched.values())
    logger.info(f"Fetched candidate data written to {written} ({total} record(s))")
    return written


def write_update_stats(path: PathLike, stats: UpdateStats) -> Path:
    written = _write_json(path, stats.to_dict())
    logger.info(f"Update statistics written to {written}")
    return written


def clear_artifacts(*paths: PathLike) -> List[str]:
    """Delete previously generated files/directories. Missing ones are ignored."""
    removed = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
        else:
            logger.debug(f"Not found: {path}")
            continue
        logger.info(f"Deleted: {path}")
        removed.append(str(path))
    return removed
