import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from exception_models import (
    ExceptionRecord, UpdatePlanItem, UpdateOutcome, UpdateStatus, NO_MATCH
)
from resolution_config import ResolutionConfig, DEFAULT_CONFIG

logger = logging.getLogger(__name__)


class RecordStoreUnavailable(Exception):
    """The invoices table cannot be reached at all. Runs must stop, not degrade."""


# =============================================================================
# TYPE HELPERS
# =============================================================================

def convert_dynamodb_types(obj):
    """Convert DynamoDB Decimals to int/float, recursively."""
    if isinstance(obj, Decimal):
        return int(obj) if obj % 1 == 0 else float(obj)
    if isinstance(obj, dict):
        return {k: convert_dynamodb_types(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [convert_dynamodb_types(v) for v in obj]
    return obj


def convert_to_decimal(obj):
    """Convert numbers to Decimal for DynamoDB compatibility"""
    if isinstance(obj, dict):
        return {k: convert_to_decimal(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [convert_to_decimal(v) for v in obj]
    elif isinstance(obj, float):
        return Decimal(str(obj))
    elif isinstance(obj, bool):
        return obj
    elif isinstance(obj, int):
        return Decimal(obj)
    else:
        return obj


# =============================================================================
# CONDITIONS
# =============================================================================

def blank_or_equal(field: str, *values: Any):
    """field is absent, empty, null, or equal to one of values."""
    condition = Attr(field).not_exists() | Attr(field).eq("") | Attr(field).attribute_type("NULL")
    for value in values:
        if value is None or value == "":
            continue
        condition = condition | Attr(field).eq(convert_to_decimal(value))
    return condition


def disputed_with(exception_type: str):
    return Attr("status").eq("DISPUTED") & Attr("exception_types").contains(exception_type)


def report_filter(report_type: str):
    """Candidate filter per report type; None for unknown types."""
    if report_type == "PENDING_CONFIRMATION":
        return Attr("status").eq("PENDING_CONFIRMATION")
    if report_type in ("INV_AMOUNT_VARIANCE", "ITEM_UNMATCHED", "PO_NOT_FOUND"):
        return disputed_with(report_type)
    if report_type == "UNASSIGNED":
        return Attr("pending_reason").eq("UNASSIGNED") & Attr("status").eq("PENDING_CONFIRMATION")
    if report_type == "SHIPTOISSUE":
        return disputed_with("PO_NOT_FOUND") & blank_or_equal("ship_to")
    return None


def build_guard_condition(item: UpdatePlanItem):
    """
    The record must still exist, still be in the state that justified the
    analysis, and its field must be blank, unchanged since analysis, or
    already equal to the target value.
    """
    rule = item.rule
    return (
        Attr("group_id").exists()
        & Attr("status").eq(rule.status)
        & Attr("exception_types").contains(rule.exception_type)
        & blank_or_equal(rule.field, item.current_value, item.suggested_value)
    )


# =============================================================================
# STORE
# =============================================================================

class RecordStore:
    """Explicit handle on the invoices table. Open once per run, close when done."""

    def __init__(self, table, resource=None):
        self.table = table
        self._resource = resource

    @classmethod
    def open(cls, config: ResolutionConfig = DEFAULT_CONFIG) -> "RecordStore":
        resource = boto3.resource('dynamodb', region_name=config.aws_region)
        table = resource.Table(config.table_name)
        try:
            table.load()
        except (BotoCoreError, ClientError) as e:
            resource.meta.client.close()
            raise RecordStoreUnavailable(f"Cannot reach DynamoDB table '{config.table_name}': {e}") from e
        logger.info(f"Connected to DynamoDB table: {config.table_name}")
        return cls(table, resource)

    @property
    def name(self) -> str:
        return getattr(self.table, "name", "")

    def close(self) -> None:
        if self._resource is not None:
            self._resource.meta.client.close()
            self._resource = None
            logger.info("DynamoDB connection closed")

    def __enter__(self) -> "RecordStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def fetch_candidates(
        self,
        group_id: str,
        report_type: str,
        suppliers: Optional[Iterable[str]] = None
    ) -> List[ExceptionRecord]:
        """Records of one group flagged for report_type, PDF documents only."""
        condition = report_filter(report_type)
        if condition is None:
            logger.warning(f"Unknown report type: {report_type}. Skipping.")
            return []
        suppliers = [s for s in (suppliers or []) if s]
        if suppliers:
            condition = condition & Attr("supplier").is_in(suppliers)

        query_kwargs: Dict[str, Any] = {
            "KeyConditionExpression": Key("group_id").eq(group_id),
            "FilterExpression": condition,
        }
        items = []
        response = self.table.query(**query_kwargs)
        items.extend(response.get("Items", []))
        while "LastEvaluatedKey" in response:
            query_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
            response = self.table.query(**query_kwargs)
            items.extend(response.get("Items", []))

        records = [
            ExceptionRecord.from_item(convert_dynamodb_types(item), report_type)
            for item in items
            if str(item.get("file_name", "")).lower().endswith(".pdf")
        ]
        logger.info(f"Found {len(records)} docs for '{report_type}'")
        return records

    def guarded_update(self, item: UpdatePlanItem) -> UpdateOutcome:
        """
        Conditional single-record write. A condition failure is an outcome,
        not an exception; connection-level errors (BotoCoreError) propagate.
        """
        field = item.rule.field
        try:
            response = self.table.update_item(
                Key={"group_id": item.group_id, "inv_num": item.inv_num},
                UpdateExpression="SET #target = :target",
                ExpressionAttributeNames={"#target": field},
                ExpressionAttributeValues={":target": convert_to_decimal(item.suggested_value)},
                ConditionExpression=build_guard_condition(item),
                ReturnValues="UPDATED_OLD",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code == "ConditionalCheckFailedException":
                logger.warning(
                    f"No record matched the guard for inv_num: {item.inv_num}. "
                    f"It may have changed since analysis."
                )
                return UpdateOutcome(item, UpdateStatus.NOT_APPLIED, NO_MATCH)
            logger.error(f"Error updating inv_num: {item.inv_num}: {e}")
            return UpdateOutcome(item, UpdateStatus.NOT_APPLIED, f"write error: {e}")

        previous = convert_dynamodb_types(response.get("Attributes", {}).get(field))
        if previous == item.suggested_value:
            logger.info(f"{field} for inv_num: {item.inv_num} was already '{item.suggested_value}'")
            return UpdateOutcome(item, UpdateStatus.NO_OP, "already equal")

        logger.info(f"Updated {field} for inv_num: {item.inv_num}")
        return UpdateOutcome(item, UpdateStatus.APPLIED)
