"""
Exception-type specific prompt templates for invoice diagnosis.

Every template ends with the same contract: one concise reason, optionally
followed by a line starting with SUGGESTED_FIX_DATA: and a JSON object.
Placeholders are replaced by plain string substitution, so literal JSON
braces inside templates are safe.
"""

import json
import logging
import re
from datetime import date
from typing import Dict, List, Optional

from exception_models import ExceptionRecord, Evidence, EvidenceKind, FIX_DATA_MARKER
from results_store import DecimalEncoder

logger = logging.getLogger(__name__)

NO_EVIDENCE_NOTE = (
    "\n(No PDF evidence is available for this invoice: content analysis was not requested, "
    "or text extraction did not produce any text. Base your answer on the JSON data only.)"
)

PLACEHOLDER_RE = re.compile(
    r"\{(?:criteria_list|current_date|file_name|exception_diff|po_num_value|ship_to_value|evidence_section|json_data)\}"
)

ANALYST_INTRO = "You are an expert accounts-payable analyst."

PROMPT_TEMPLATES: Dict[str, Dict] = {
    "PENDING_CONFIRMATION": {
        "base_prompt": (
            ANALYST_INTRO + " Invoice file {file_name} is stuck in 'PENDING_CONFIRMATION' status.\n"
            "Invoice JSON Data:\n```json\n{json_data}\n```\n"
            "{evidence_section}\n"
            "Find the main reason it cannot be confirmed. Check these issues: {criteria_list}.\n"
            "Answer with ONLY the single most important reason as one short sentence. "
            "If the reason is a missing invoice number (inv_num) and the PDF text shows the invoice number clearly, "
            "add a new line: " + FIX_DATA_MARKER + " {\"inv_num\": \"<invoice_number>\"}. "
            "If none of the listed issues apply, answer 'No specific listed criteria met for PENDING_CONFIRMATION'."
        ),
        "criteria": [
            "inv_num is missing or empty",
            "total is missing or zero",
            "line_items is missing or empty",
            "inv_date is missing",
            "inv_date is later than today ({current_date})",
            "supplier is missing",
        ],
    },
    "INV_AMOUNT_VARIANCE": {
        "base_prompt": (
            ANALYST_INTRO + " Invoice file {file_name} is DISPUTED with an 'INV_AMOUNT_VARIANCE' "
            "exception (difference: {exception_diff}).\n"
            "Invoice JSON Data:\n```json\n{json_data}\n```\n"
            "{evidence_section}\n"
            "Explain the most likely cause of the variance. Focus on: {criteria_list}.\n"
            "Answer with ONLY the most likely cause as one short sentence. "
            "If the PDF text shows a value missing from the JSON that would close the variance "
            "(for example a shipping charge), add a new line: "
            + FIX_DATA_MARKER + " {\"<field_name>\": <value>}."
        ),
        "criteria": [
            "line item prices plus taxes and shipping do not add up to total",
            "sub_total plus taxes and shipping does not equal total",
            "a discount_amount was not applied",
            "shipping is counted twice or included in sub_total",
        ],
    },
    "PO_NOT_FOUND": {
        "base_prompt": (
            ANALYST_INTRO + " Invoice file {file_name} has a 'PO_NOT_FOUND' exception. "
            "The po_num in the JSON is '{po_num_value}'.\n"
            "Invoice JSON Data:\n```json\n{json_data}\n```\n"
            "{evidence_section}\n"
            "Why could the purchase order not be matched? Check: {criteria_list}.\n"
            "Answer with ONLY the most probable reason as one short sentence. "
            "If the PDF text shows the correct PO number, add a new line: "
            + FIX_DATA_MARKER + " {\"po_num\": \"<po_number>\", \"confidence\": <integer 0-100>} "
            "where confidence is how sure you are that the PO number is correct."
        ),
        "criteria": [
            "po_num is empty or null",
            "po_num looks truncated or badly formatted",
            "the supplier does not always require a PO",
        ],
    },
    "ITEM_UNMATCHED": {
        "base_prompt": (
            ANALYST_INTRO + " Invoice file {file_name} has an 'ITEM_UNMATCHED' exception.\n"
            "Invoice JSON Data (line_items matter most):\n```json\n{json_data}\n```\n"
            "{evidence_section}\n"
            "Why could the line items not be matched? Consider: {criteria_list}.\n"
            "Answer with ONLY the most probable reason as one short sentence. "
            "If the PDF text shows corrected line item values, add a new line: "
            + FIX_DATA_MARKER + " {\"line_item_updates\": [{\"identifier\": {\"name\": \"<item name or sku>\"}, "
            "\"corrections\": {\"supplier_product_id\": \"<sku>\", \"qty\": <qty>}}]}."
        ),
        "criteria": [
            "supplier_product_id is missing or unusual",
            "the item name is vague or generic",
            "unit price or quantity is implausible",
        ],
    },
    "UNASSIGNED": {
        "base_prompt": (
            ANALYST_INTRO + " Invoice file {file_name} is PENDING_CONFIRMATION with pending_reason 'UNASSIGNED'.\n"
            "Invoice JSON Data:\n```json\n{json_data}\n```\n"
            "{evidence_section}\n"
            "Why is it unassigned? Check: {criteria_list}.\n"
            "Answer with ONLY the most probable reason as one short sentence. "
            "If the PDF text shows a supplier name that is missing or different in the JSON, add a new line: "
            + FIX_DATA_MARKER + " {\"supplier\": \"<supplier_name>\"}."
        ),
        "criteria": [
            "supplier is missing or unknown",
            "invoice number or PO number is missing so the invoice cannot be routed",
            "bill_to or ship_to address is incomplete",
        ],
    },
    "SHIPTOISSUE": {
        "base_prompt": (
            ANALYST_INTRO + " Invoice file {file_name} is DISPUTED because of its ship_to address. "
            "The ship_to in the JSON is '{ship_to_value}'.\n"
            "Invoice JSON Data:\n```json\n{json_data}\n```\n"
            "{evidence_section}\n"
            "Why is the ship_to address a problem? Consider: {criteria_list}.\n"
            "Answer with ONLY the most probable reason as one short sentence. "
            "If the PDF text shows the full shipping address, add a new line: "
            + FIX_DATA_MARKER + " {\"ship_to\": \"<shipping_address>\", \"confidence\": <integer 0-100>} "
            "where confidence is how sure you are that the address is the ship-to address."
        ),
        "criteria": [
            "ship_to is empty, null or missing",
            "ship_to is incomplete (no street, city or postal code)",
            "ship_to does not look like a known delivery location",
        ],
    },
}

GENERIC_TEMPLATE = (
    ANALYST_INTRO + " Invoice file {file_name} was flagged for review.\n"
    "Invoice JSON Data:\n```json\n{json_data}\n```\n"
    "{evidence_section}\n"
    "Answer with ONLY the most probable reason this invoice needs review, as one short sentence."
)


def supported_exception_types() -> List[str]:
    return list(PROMPT_TEMPLATES)


def render_evidence_section(evidence: Optional[Evidence], include_evidence: bool) -> str:
    if not include_evidence or evidence is None:
        return NO_EVIDENCE_NOTE
    if evidence.kind == EvidenceKind.TOO_LARGE:
        return f"\n(Note: {evidence.message})"
    if evidence.kind == EvidenceKind.FAILED or not evidence.text:
        return NO_EVIDENCE_NOTE
    return (
        "\n\nExtracted PDF Text Content (page 1):\n"
        "PDF_TEXT_CONTENT_START\n"
        f"{evidence.text}\n"
        "PDF_TEXT_CONTENT_END"
    )


def build_prompt(
    record: ExceptionRecord,
    evidence: Optional[Evidence] = None,
    include_evidence: bool = True,
    today: Optional[date] = None
) -> str:
    """Render the template for record.report_type, falling back to the generic one."""
    template = PROMPT_TEMPLATES.get(record.report_type)
    if template is None:
        logger.warning(f"No prompt template for report type: {record.report_type}. Using generic fallback.")
        prompt = GENERIC_TEMPLATE
        criteria = ""
    else:
        prompt = template["base_prompt"]
        criteria = "; ".join(template["criteria"])

    current_date = (today or date.today()).isoformat()
    diff = record.exception_diff()
    substitutions = {
        "{criteria_list}": criteria.replace("{current_date}", current_date),
        "{current_date}": current_date,
        "{file_name}": record.file_name or "N/A",
        "{exception_diff}": str(diff) if diff is not None else "N/A",
        "{po_num_value}": record.po_num or "Not Provided",
        "{ship_to_value}": record.ship_to or "Not Provided",
        "{evidence_section}": render_evidence_section(evidence, include_evidence),
        "{json_data}": json.dumps(dict(record.data), indent=2, cls=DecimalEncoder, ensure_ascii=False),
    }
    # single pass, so placeholder-looking text inside record data or evidence is left alone
    return PLACEHOLDER_RE.sub(lambda m: substitutions[m.group(0)], prompt)
