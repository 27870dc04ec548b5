import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from exception_models import SuggestedFix, FIX_DATA_MARKER

logger = logging.getLogger(__name__)


class ParserState(Enum):
    BEFORE_MARKER = "before_marker"
    AFTER_MARKER = "after_marker"
    BRACE_SCAN = "brace_scan"
    DONE = "done"


@dataclass(frozen=True)
class ParsedResponse:
    diagnosis: str
    suggested_fix: Optional[SuggestedFix] = None
    payload_error: Optional[str] = None


class ResponseParser:
    """
    Splits a model reply into a diagnosis and an optional correction.

    BEFORE_MARKER: everything up to SUGGESTED_FIX_DATA: is the diagnosis.
    AFTER_MARKER:  the rest of the text is the candidate payload.
    BRACE_SCAN:    keep the first '{' .. last '}' span and decode it as a JSON object.

    A payload that cannot be decoded is dropped; the diagnosis is always kept.
    """

    def __init__(self, marker: str = FIX_DATA_MARKER):
        self.marker = marker

    def parse(self, text: Optional[str], record_id: str = "") -> ParsedResponse:
        text = text or ""
        state = ParserState.BEFORE_MARKER
        diagnosis = text.strip()
        candidate = ""
        payload = None

        while state != ParserState.DONE:
            if state == ParserState.BEFORE_MARKER:
                index = text.find(self.marker)
                if index == -1:
                    return ParsedResponse(diagnosis=diagnosis)
                diagnosis = text[:index].strip()
                candidate = text[index + len(self.marker):].strip()
                state = ParserState.AFTER_MARKER

            elif state == ParserState.AFTER_MARKER:
                first_brace = candidate.find("{")
                last_brace = candidate.rfind("}")
                if first_brace == -1 or last_brace <= first_brace:
                    return self._drop(diagnosis, record_id, candidate, "no JSON object after marker")
                candidate = candidate[first_brace:last_brace + 1]
                state = ParserState.BRACE_SCAN

            elif state == ParserState.BRACE_SCAN:
                try:
                    payload = json.loads(candidate)
                except json.JSONDecodeError as e:
                    return self._drop(diagnosis, record_id, candidate, f"invalid JSON: {e}")
                if not isinstance(payload, dict):
                    return self._drop(diagnosis, record_id, candidate, "payload is not a JSON object")
                state = ParserState.DONE

        fix = SuggestedFix.from_payload(payload)
        logger.info(f"Parsed suggested fix for {record_id or 'response'}: {fix.to_dict()}")
        return ParsedResponse(diagnosis=diagnosis, suggested_fix=fix)

    def _drop(self, diagnosis: str, record_id: str, candidate: str, reason: str) -> ParsedResponse:
        logger.warning(
            f"Could not parse {self.marker} payload for {record_id or 'response'} ({reason}). "
            f"Attempted: \"{candidate[:100]}\""
        )
        return ParsedResponse(diagnosis=diagnosis, payload_error=reason)


def parse_response(text: Optional[str], record_id: str = "") -> ParsedResponse:
    return ResponseParser().parse(text, record_id)
