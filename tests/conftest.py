from types import SimpleNamespace

import fitz
import httpx
import anthropic
import pytest
from botocore.exceptions import ClientError

from exception_models import ExceptionRecord
from resolution_config import ResolutionConfig


ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"


@pytest.fixture
def config(tmp_path):
    return ResolutionConfig(
        anthropic_api_key="test-key",
        rate_limit_wait_sec=60.0,
        inter_call_delay_sec=0.0,
        output_dir=str(tmp_path / "data"),
    )


@pytest.fixture
def make_pdf(tmp_path):
    def _make(name="invoice.pdf", pages=1, text="INVOICE INV-001"):
        path = tmp_path / name
        doc = fitz.open()
        for number in range(pages):
            page = doc.new_page()
            page.insert_text((72, 72), f"{text} page {number + 1}")
        doc.save(str(path))
        doc.close()
        return path
    return _make


def invoice_item(**overrides):
    item = {
        "group_id": "G-100",
        "inv_num": "INV-001",
        "file_name": "inv_001.pdf",
        "supplier": "Acme Supplies",
        "status": "DISPUTED",
        "total": 1250,
        "inv_date": "2024-05-02",
        "po_num": "",
        "ship_to": "",
        "exceptions": {"header": [{"exception_type": "PO_NOT_FOUND"}], "line_item": []},
    }
    item.update(overrides)
    return item


def make_record(report_type="SHIPTOISSUE", **overrides):
    return ExceptionRecord.from_item(invoice_item(**overrides), report_type)


# =============================================================================
# ANTHROPIC FAKES
# =============================================================================

def text_message(text, stop_reason="end_turn"):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=120, output_tokens=30),
    )


def rate_limit_error(retry_after=None):
    headers = {"retry-after": retry_after} if retry_after is not None else {}
    response = httpx.Response(429, headers=headers, request=httpx.Request("POST", ANTHROPIC_URL))
    return anthropic.RateLimitError("rate limited", response=response, body=None)


def connection_error():
    return anthropic.APIConnectionError(request=httpx.Request("POST", ANTHROPIC_URL))


class FakeMessages:
    """Replays scripted replies; exceptions in the script are raised."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeAnthropic:
    def __init__(self, *script):
        self.messages = FakeMessages(script)


# =============================================================================
# DYNAMODB FAKES
# =============================================================================

def client_error(code, operation="UpdateItem"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeTable:
    name = "Invoices"

    def __init__(self, pages=None, update_results=None):
        self.pages = list(pages or [{"Items": []}])
        self.update_results = list(update_results or [])
        self.queries = []
        self.updates = []

    def query(self, **kwargs):
        self.queries.append(kwargs)
        return self.pages[len(self.queries) - 1]

    def update_item(self, **kwargs):
        self.updates.append(kwargs)
        result = self.update_results.pop(0) if self.update_results else {"Attributes": {}}
        if isinstance(result, Exception):
            raise result
        return result


_ABSENT = object()


def condition_holds(condition, item):
    """Evaluate a boto3 condition against a plain item dict, as DynamoDB would."""
    expression = condition.get_expression()
    operator = expression["operator"]
    values = expression["values"]
    if operator == "AND":
        return all(condition_holds(v, item) for v in values)
    if operator == "OR":
        return any(condition_holds(v, item) for v in values)
    if operator == "NOT":
        return not condition_holds(values[0], item)

    current = item.get(values[0].name, _ABSENT)
    if operator == "attribute_exists":
        return current is not _ABSENT
    if operator == "attribute_not_exists":
        return current is _ABSENT
    if current is _ABSENT:
        return False
    if operator == "attribute_type":
        return values[1] == "NULL" and current is None
    if operator == "=":
        return current == values[1]
    if operator == "contains":
        return current is not None and values[1] in current
    if operator == "IN":
        return current in values[1]
    raise AssertionError(f"unsupported condition operator: {operator}")


class ItemTable:
    """Holds items by key and enforces ConditionExpression on update_item."""
    name = "Invoices"

    def __init__(self, *items):
        self.items = {(i["group_id"], i["inv_num"]): dict(i) for i in items}

    def get(self, group_id, inv_num):
        return self.items.get((group_id, inv_num))

    def update_item(self, Key, UpdateExpression, ExpressionAttributeNames, ExpressionAttributeValues,
                    ConditionExpression, ReturnValues):
        item = self.items.get((Key["group_id"], Key["inv_num"]), {})
        if not condition_holds(ConditionExpression, item):
            raise client_error("ConditionalCheckFailedException")
        field = ExpressionAttributeNames["#target"]
        old = {field: item[field]} if field in item else {}
        item[field] = ExpressionAttributeValues[":target"]
        return {"Attributes": old}
