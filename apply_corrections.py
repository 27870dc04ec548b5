"""
Update run: turn confident suggested corrections from the analysis results
file into an update plan, then apply it to the invoices table with guarded
conditional writes.

The plan is always written to disk before anything is applied so it can be
reviewed; nothing is written to DynamoDB unless the request sets execute.
"""

import json
import logging
from typing import Any, List, Mapping, Optional

from botocore.exceptions import BotoCoreError

from exception_models import (
    AnalysisResult, UpdateOutcome, UpdatePlanItem, UpdateStats, UpdateStatus,
    UPDATE_RULES, NOT_ATTEMPTED
)
from record_store import RecordStore
from resolution_config import ResolutionConfig, DEFAULT_CONFIG, parse_flag
from results_store import (
    read_analysis_results, safe_json_dumps, write_update_plan, write_update_stats
)

logger = logging.getLogger(__name__)

UPDATE_MODES = ("all", "first")


# =============================================================================
# PLANNING
# =============================================================================

def prepare_update_plan(
    results: Mapping[str, AnalysisResult],
    threshold: int = DEFAULT_CONFIG.confidence_threshold
) -> List[UpdatePlanItem]:
    """Plan items for update-eligible results with a numeric confidence >= threshold."""
    plan = []
    for file_name, result in results.items():
        rule = UPDATE_RULES.get(result.report_type)
        fix = result.suggested_fix
        if rule is None or fix is None:
            continue

        value = fix.fields.get(rule.field)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue

        if not fix.has_numeric_confidence():
            logger.warning(f"{file_name}: suggested {rule.field} has no numeric confidence ({fix.confidence!r}). Skipping.")
            continue
        if fix.confidence < threshold:
            logger.info(f"{file_name}: confidence {fix.confidence} below threshold {threshold}. Skipping.")
            continue

        snapshot = result.original_snapshot
        if not snapshot.group_id or not snapshot.inv_num:
            logger.warning(f"{file_name}: missing group_id or inv_num in original snapshot. Cannot plan update.")
            continue

        plan.append(UpdatePlanItem(
            file_name=file_name,
            group_id=snapshot.group_id,
            inv_num=snapshot.inv_num,
            report_type=result.report_type,
            field=rule.field,
            current_value=getattr(snapshot, rule.field),
            suggested_value=value,
            confidence=fix.confidence,
        ))

    logger.info(f"Prepared {len(plan)} update(s) meeting confidence >= {threshold}")
    return plan


# =============================================================================
# EXECUTION
# =============================================================================

def execute_updates(store: RecordStore, plan: List[UpdatePlanItem], mode: str = "all") -> UpdateStats:
    """
    Apply plan items one at a time. Guard failures and write errors are
    recorded per item; a connection-level failure stops the run and the
    remaining items are reported as not attempted.
    """
    if mode not in UPDATE_MODES:
        raise ValueError(f"mode must be one of {', '.join(UPDATE_MODES)}, got {mode!r}")

    selected = plan[:1] if mode == "first" else list(plan)
    stats = UpdateStats(total_planned_updates=len(plan), mode_selected=mode, table_name=store.name)
    logger.info(f"Applying {len(selected)} of {len(plan)} planned update(s) to {store.name or 'table'}")

    for index, item in enumerate(selected):
        logger.info(
            f"Attempting update {index + 1}/{len(selected)}: {item.field} for inv_num: {item.inv_num} "
            f"(group_id: {item.group_id})"
        )
        try:
            outcome = store.guarded_update(item)
        except BotoCoreError as e:
            logger.error(f"Connection failure while updating inv_num: {item.inv_num}: {e}. Aborting remaining updates.")
            stats.aborted = True
            stats.outcomes.append(UpdateOutcome(item, UpdateStatus.NOT_APPLIED, f"write error: {e}"))
            reason = f"{NOT_ATTEMPTED}: aborted after connection failure"
            stats.outcomes.extend(UpdateOutcome(rest, UpdateStatus.NOT_APPLIED, reason) for rest in selected[index + 1:])
            break
        stats.outcomes.append(outcome)

    logger.info(
        f"Updates finished: {stats.count(UpdateStatus.APPLIED)} applied, "
        f"{stats.count(UpdateStatus.NO_OP)} unchanged, {len(stats.failures)} not applied"
    )
    return stats


# =============================================================================
# REQUEST HANDLING
# =============================================================================

def _parse_threshold(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError("confidence_threshold must be a number")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"confidence_threshold must be a number, got {value!r}")


def main(data, config: Optional[ResolutionConfig] = None, store: Optional[RecordStore] = None):
    """
    Plan (and optionally apply) corrections from the analysis results file.

    Args:
        data (dict): Request data containing:
            - execute (bool, default False): apply the plan to DynamoDB
            - mode (str, default "all"): "all" or "first"
            - confidence_threshold (int, optional): overrides CONFIDENCE_THRESHOLD

    Returns:
        dict: plan summary, plus update statistics when executed. The stats
        file is rewritten on every run; a run without execute records mode
        "cancelled".

    Raises:
        RecordStoreUnavailable: the invoices table cannot be reached
    """
    config = config or DEFAULT_CONFIG
    data = data or {}
    try:
        if not isinstance(data, dict):
            raise ValueError("Request body must be a JSON object")
        threshold = _parse_threshold(data.get("confidence_threshold"), config.confidence_threshold)
        execute = parse_flag(data.get("execute"), "execute", False)
        mode = data.get("mode", "all")
        if mode not in UPDATE_MODES:
            raise ValueError(f"mode must be one of {', '.join(UPDATE_MODES)}, got {mode!r}")
        results = read_analysis_results(config.analysis_results_file)
    except FileNotFoundError:
        error = f"Analysis results file not found at {config.analysis_results_file}. Run the analysis first."
        logger.error(error)
        return {"success": False, "error": error}
    except ValueError as e:
        logger.error(f"Invalid update request: {e}")
        return {"success": False, "error": str(e)}

    plan = prepare_update_plan(results, threshold)
    plan_file = write_update_plan(config.update_plan_file, plan)
    response = {
        "success": True,
        "executed": False,
        "confidence_threshold": threshold,
        "planned_updates": len(plan),
        "plan_file": str(plan_file),
        "plan": [item.to_dict() for item in plan],
    }

    if not execute:
        stats = UpdateStats(mode_selected="cancelled", table_name=config.table_name, total_planned_updates=len(plan))
        response["stats_file"] = str(write_update_stats(config.update_stats_file, stats))
        return response

    if not plan:
        logger.info("No updates met the criteria. Nothing to apply.")
        stats = UpdateStats(mode_selected=mode, table_name=config.table_name)
    elif store is not None:
        stats = execute_updates(store, plan, mode)
    else:
        with RecordStore.open(config) as opened:
            stats = execute_updates(opened, plan, mode)

    stats_file = write_update_stats(config.update_stats_file, stats)
    response.update({
        "success": not stats.aborted,
        "executed": True,
        "stats": stats.to_dict(),
        "stats_file": str(stats_file),
    })
    if stats.aborted:
        response["error"] = "Record store connection failed during updates; remaining updates were not attempted"
    return response


if __name__ == "__main__":
    import sys

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    payload = {}
    if len(sys.argv) > 1:
        with open(sys.argv[1], 'r') as f:
            payload = json.load(f)
    print(safe_json_dumps(main(payload)))
