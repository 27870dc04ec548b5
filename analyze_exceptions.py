"""
Exception analysis run.

For every candidate invoice record: extract page-1 evidence from its PDF,
build the exception-specific prompt, ask Claude for a diagnosis, split the
reply into diagnosis + suggested correction, and write everything to the
analysis results file for a later, separate update run.

Per-record flow:
    pending -> extracting -> (evidence_gated | evidence_ready)
            -> prompting -> inferring -> parsed

Every record ends with an entry in the results file; its stage is the last
state it reached.

One record failing never stops the run.
"""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from document_store import DocumentStore
from evidence_extractor import extract_evidence
from exception_models import (
    AnalysisResult, Evidence, ExceptionRecord, OriginalSnapshot, RecordStage
)
from inference_client import CallPacer, InferenceClient, health_check as inference_health
from prompt_templates import build_prompt, supported_exception_types
from record_store import RecordStore
from resolution_config import ResolutionConfig, DEFAULT_CONFIG, parse_flag
from response_parser import parse_response
from results_store import clear_artifacts, safe_json_dumps, write_analysis_results, write_fetched_data

logger = logging.getLogger(__name__)

Extractor = Callable[[Path, str], Evidence]


# =============================================================================
# SINGLE RECORD
# =============================================================================

class RecordAnalysis:
    """Drives one record through the pipeline, remembering the stage it reached."""

    def __init__(
        self,
        record: ExceptionRecord,
        include_evidence: bool,
        extractor: Extractor,
        client: InferenceClient,
        pacer: CallPacer,
        documents: Optional[DocumentStore]
    ):
        self.record = record
        self.include_evidence = include_evidence
        self.extractor = extractor
        self.client = client
        self.pacer = pacer
        self.documents = documents
        self.stage = RecordStage.PENDING

    def result(self, diagnosis: str, suggested_fix=None) -> AnalysisResult:
        return AnalysisResult(
            file_name=self.record.file_name,
            report_type=self.record.report_type,
            diagnosis=diagnosis,
            original_snapshot=OriginalSnapshot.of(self.record),
            suggested_fix=suggested_fix,
            supplier=self.record.supplier or "N/A",
            stage=self.stage,
        )

    def _evidence(self) -> Evidence:
        file_name = self.record.file_name
        if self.documents is None:
            return self.extractor(Path(file_name), file_name)
        try:
            path = self.documents.ensure_local(file_name)
        except (BotoCoreError, ClientError, FileNotFoundError) as e:
            logger.error(f"Could not fetch document {file_name}: {e}")
            return Evidence.failed(f"document unavailable: {e}")
        return self.extractor(path, file_name)

    def run(self) -> AnalysisResult:
        record_id = self.record.record_id
        evidence = None

        if self.include_evidence:
            self.stage = RecordStage.EXTRACTING
            evidence = self._evidence()
            if not evidence.usable:
                self.stage = RecordStage.EVIDENCE_GATED
                logger.warning(f"Analysis for {record_id}: {evidence.message}")
                return self.result(evidence.message)
            self.stage = RecordStage.EVIDENCE_READY

        self.stage = RecordStage.PROMPTING
        prompt = build_prompt(self.record, evidence, self.include_evidence)

        self.stage = RecordStage.INFERRING
        self.pacer.wait()
        try:
            outcome = self.client.generate(prompt, record_id)
        finally:
            self.pacer.mark()

        if not outcome.ok:
            logger.warning(f"AI call for {record_id} did not succeed: {outcome.kind.value}")
            return self.result(outcome.as_text())

        parsed = parse_response(outcome.text, record_id)
        self.stage = RecordStage.PARSED
        return self.result(parsed.diagnosis, parsed.suggested_fix)


# =============================================================================
# RUN
# =============================================================================

def skipped_result(record: ExceptionRecord, missing: Sequence[str], key: str) -> AnalysisResult:
    return AnalysisResult(
        file_name=key,
        report_type=record.report_type,
        diagnosis=f"Skipped: missing required fields ({', '.join(missing)})",
        original_snapshot=OriginalSnapshot.of(record),
        supplier=record.supplier or "N/A",
        stage=RecordStage.PENDING,
    )


def analyze_records(
    records: Sequence[ExceptionRecord],
    config: ResolutionConfig = DEFAULT_CONFIG,
    include_evidence: bool = True,
    extractor: Optional[Extractor] = None,
    client: Optional[InferenceClient] = None,
    pacer: Optional[CallPacer] = None,
    documents: Optional[DocumentStore] = None
) -> Dict[str, AnalysisResult]:
    """Analyze records in order. Returns file_name -> AnalysisResult, in candidate order."""
    if extractor is None:
        extractor = lambda path, name: extract_evidence(path, name, config)
    client = client or InferenceClient(config)
    pacer = pacer or CallPacer(config.inter_call_delay_sec)

    logger.info(f"Starting AI analysis for {len(records)} invoice(s)")
    results: Dict[str, AnalysisResult] = {}

    for index, record in enumerate(records):
        missing = record.missing_identity()
        if missing:
            key = record.file_name or f"unknown_file_at_index_{index}"
            logger.warning(f"Skipping record at index {index} ({key}): missing {', '.join(missing)}")
            results[key] = skipped_result(record, missing, key)
            continue

        if record.file_name in results:
            logger.warning(f"Duplicate candidate {record.file_name} ({record.report_type}); later result wins")

        logger.info(f"Analyzing invoice {index + 1}/{len(records)}: {record.file_name} ({record.report_type})")
        analysis = RecordAnalysis(record, include_evidence, extractor, client, pacer, documents)
        try:
            result = analysis.run()
        except Exception as e:
            logger.exception(f"Analysis failed for {record.file_name} during {analysis.stage.value}")
            result = analysis.result(f"Analysis failed during {analysis.stage.value}: {e}")

        results[record.file_name] = result
        logger.info(f"Diagnosis for {record.file_name}: {result.diagnosis[:120]}")

    logger.info(
        f"AI analysis complete: {len(results)} result(s), "
        f"{client.api_calls} API call(s), "
        f"{client.total_input_tokens} input / {client.total_output_tokens} output tokens"
    )
    return results


# =============================================================================
# REQUEST HANDLING
# =============================================================================

def _records_from_payload(data: Mapping[str, Any]) -> List[ExceptionRecord]:
    default_type = data.get("report_type")
    records = []
    for index, item in enumerate(data["records"]):
        if not isinstance(item, dict):
            raise ValueError(f"records[{index}] must be an object")
        report_type = item.get("report_type") or default_type
        if not report_type:
            raise ValueError(f"records[{index}] has no report_type")
        records.append(ExceptionRecord.from_item(item, report_type))
    return records


def _records_from_store(store: RecordStore, data: Mapping[str, Any]) -> Dict[str, List[ExceptionRecord]]:
    """Candidates per report type, in request order."""
    report_types = data["report_types"]
    if isinstance(report_types, str):
        report_types = [report_types]
    return {
        report_type: store.fetch_candidates(data["group_id"], report_type, data.get("suppliers"))
        for report_type in report_types
    }


def _parse_limit(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"limit must be a non-negative integer, got {value!r}")
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"limit must be a non-negative integer, got {value!r}")
    if limit < 0:
        raise ValueError(f"limit must be a non-negative integer, got {value!r}")
    return limit


def clear_previous_data(config: ResolutionConfig = DEFAULT_CONFIG) -> List[str]:
    """Remove artifacts and downloads left by previous runs."""
    return clear_artifacts(
        config.analysis_results_file,
        config.update_plan_file,
        config.update_stats_file,
        config.fetched_data_file,
        config.downloads_dir,
    )


def main(
    data,
    config: Optional[ResolutionConfig] = None,
    store: Optional[RecordStore] = None,
    client: Optional[InferenceClient] = None,
    extractor: Optional[Extractor] = None
):
    """
    Run the analysis phase.

    Args:
        data (dict): Request data containing either:
            - records (list): invoice records (each with report_type, or a top-level report_type)
          or:
            - group_id (str): record group to fetch from the invoices table
            - report_types (list): exception types to fetch
            - suppliers (list, optional): restrict to these suppliers
          and optionally:
            - include_pdf_content (bool, default True)
            - limit (int): analyze at most this many candidates; 0 analyzes none
            - download_files (bool, default True): fetch missing PDFs from S3
            - clear_previous_data (bool, default False)

    Returns:
        dict: summary with per-record results

    Raises:
        RecordStoreUnavailable: the invoices table cannot be reached
    """
    config = config or DEFAULT_CONFIG
    try:
        if not isinstance(data, dict):
            raise ValueError("Request body must be a JSON object")
        if "records" not in data and "group_id" not in data:
            raise ValueError("Missing required fields: provide 'records' or 'group_id'")
        if "records" in data and not isinstance(data["records"], list):
            raise ValueError("records must be a list")
        if "records" not in data and not data.get("report_types"):
            raise ValueError(
                f"report_types is required when fetching from the record store. "
                f"Supported: {', '.join(supported_exception_types())}"
            )
        limit = _parse_limit(data.get("limit"))
        include_evidence = parse_flag(data.get("include_pdf_content"), "include_pdf_content", True)
        allow_download = parse_flag(data.get("download_files"), "download_files", True)
        clear_previous = parse_flag(data.get("clear_previous_data"), "clear_previous_data", False)
    except ValueError as e:
        logger.error(f"Invalid analysis request: {e}")
        return {"success": False, "error": str(e)}

    if clear_previous:
        clear_previous_data(config)

    try:
        if "records" in data:
            records = _records_from_payload(data)
        else:
            if store is not None:
                fetched = _records_from_store(store, data)
            else:
                with RecordStore.open(config) as opened:
                    fetched = _records_from_store(opened, data)
            write_fetched_data(
                config.fetched_data_file,
                {report_type: [dict(r.data) for r in found] for report_type, found in fetched.items()},
            )
            records = [record for found in fetched.values() for record in found]
    except ValueError as e:
        logger.error(f"Invalid analysis request: {e}")
        return {"success": False, "error": str(e)}

    if limit is not None:
        records = records[:limit]

    documents = DocumentStore(config, allow_download=allow_download)

    results = analyze_records(
        records,
        config=config,
        include_evidence=include_evidence,
        extractor=extractor,
        client=client,
        documents=documents,
    )
    results_file = write_analysis_results(config.analysis_results_file, results)

    with_fix = sum(1 for r in results.values() if r.suggested_fix is not None)
    skipped = sum(1 for r in results.values() if r.stage == RecordStage.PENDING)
    return {
        "success": True,
        "total_candidates": len(records),
        "analyzed": len(results) - skipped,
        "skipped": skipped,
        "with_suggested_fix": with_fix,
        "results_file": str(results_file),
        "results": {name: result.to_dict() for name, result in results.items()},
    }


def health_check(config: ResolutionConfig = DEFAULT_CONFIG):
    """Health check for the exception analysis service"""
    status = inference_health(config)
    return {
        "healthy": status["anthropic_configured"],
        "service": "invoice-exception-analysis",
        "supported_exception_types": supported_exception_types(),
        "inference": status,
        "max_evidence_pages": config.max_pages,
        "output_dir": config.output_dir,
    }


if __name__ == "__main__":
    import sys

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if len(sys.argv) > 1 and sys.argv[1] == "--health":
        print(safe_json_dumps(health_check()))
    elif len(sys.argv) > 1:
        with open(sys.argv[1], 'r') as f:
            payload = json.load(f)
        print(safe_json_dumps(main(payload)))
    else:
        print("Invoice Exception Analysis")
        print(safe_json_dumps(health_check()))
