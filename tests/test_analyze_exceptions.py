import json

import analyze_exceptions
from analyze_exceptions import analyze_records
from conftest import FakeAnthropic, FakeTable, invoice_item, make_record, rate_limit_error, text_message
from exception_models import Evidence, RecordStage
from inference_client import CallPacer, InferenceClient
from prompt_templates import NO_EVIDENCE_NOTE
from record_store import RecordStore

SHIP_TO_REPLY = (
    "The ship_to field is empty but the PDF shows a delivery address.\n"
    'SUGGESTED_FIX_DATA: {"ship_to": "12 Harbour Road, Leith EH6 6LX", "confidence": 95}'
)


class Extractor:
    def __init__(self, evidence=None, by_name=None):
        self.evidence = evidence or Evidence.from_text("Deliver to: 12 Harbour Road, Leith EH6 6LX")
        self.by_name = by_name or {}
        self.calls = []

    def __call__(self, path, file_name):
        self.calls.append(file_name)
        found = self.by_name.get(file_name, self.evidence)
        if isinstance(found, Exception):
            raise found
        return found


def client_for(config, *script):
    fake = FakeAnthropic(*script)
    return InferenceClient(config, client=fake, sleep=lambda seconds: None), fake


def test_ship_to_evidence_produces_confident_fix(config):
    client, fake = client_for(config, text_message(SHIP_TO_REPLY))

    results = analyze_records([make_record("SHIPTOISSUE")], config, extractor=Extractor(), client=client)

    result = results["inv_001.pdf"]
    assert result.diagnosis == "The ship_to field is empty but the PDF shows a delivery address."
    assert result.suggested_fix.fields == {"ship_to": "12 Harbour Road, Leith EH6 6LX"}
    assert result.suggested_fix.confidence == 95
    assert result.stage == RecordStage.PARSED
    assert result.original_snapshot.group_id == "G-100"
    assert "12 Harbour Road" in fake.messages.calls[0]["messages"][0]["content"]


def test_too_large_pdf_never_reaches_inference(config):
    client, fake = client_for(config, text_message("unused"))
    extractor = Extractor(Evidence.too_large("inv_001.pdf", 9, 3))

    result = analyze_records([make_record()], config, extractor=extractor, client=client)["inv_001.pdf"]

    assert result.diagnosis.startswith("PDF_TOO_LARGE:")
    assert result.stage == RecordStage.EVIDENCE_GATED
    assert result.suggested_fix is None
    assert fake.messages.calls == []


def test_failed_extraction_never_reaches_inference(config):
    client, fake = client_for(config, text_message("unused"))

    result = analyze_records([make_record()], config, extractor=Extractor(Evidence.failed()), client=client)["inv_001.pdf"]

    assert result.diagnosis == "PDF text extraction failed."
    assert fake.messages.calls == []


def test_records_missing_identity_are_skipped(config):
    client, fake = client_for(config, text_message("Missing PO."))
    records = [make_record(file_name=None), make_record(inv_num=""), make_record(file_name="ok.pdf")]

    results = analyze_records(records, config, extractor=Extractor(), client=client)

    assert list(results) == ["unknown_file_at_index_0", "inv_001.pdf", "ok.pdf"]
    assert results["unknown_file_at_index_0"].diagnosis == "Skipped: missing required fields (file_name)"
    assert results["inv_001.pdf"].diagnosis == "Skipped: missing required fields (inv_num)"
    assert results["inv_001.pdf"].stage == RecordStage.PENDING
    assert len(fake.messages.calls) == 1


def test_failure_in_one_record_does_not_stop_the_run(config):
    client, fake = client_for(config, text_message("Missing PO."))
    extractor = Extractor(by_name={"bad.pdf": KeyError("page")})
    records = [make_record(file_name="bad.pdf"), make_record(file_name="good.pdf")]

    results = analyze_records(records, config, extractor=extractor, client=client)

    assert results["bad.pdf"].diagnosis == "Analysis failed during extracting: 'page'"
    assert results["bad.pdf"].stage == RecordStage.EXTRACTING
    assert results["good.pdf"].diagnosis == "Missing PO."


def test_evidence_withheld_when_not_requested(config):
    client, fake = client_for(config, text_message("Missing PO."))
    extractor = Extractor()

    analyze_records([make_record("PO_NOT_FOUND")], config, include_evidence=False, extractor=extractor, client=client)

    assert extractor.calls == []
    assert NO_EVIDENCE_NOTE in fake.messages.calls[0]["messages"][0]["content"]


def test_inference_failures_become_diagnoses(config):
    client, fake = client_for(config, text_message("", stop_reason="refusal"))

    result = analyze_records([make_record()], config, extractor=Extractor(), client=client)["inv_001.pdf"]

    assert result.diagnosis.startswith("AI_BLOCKED:")
    assert result.suggested_fix is None
    assert len(fake.messages.calls) == 1


def test_exhausted_rate_limit_becomes_diagnosis(config):
    client, fake = client_for(config, rate_limit_error("1"))

    result = analyze_records([make_record()], config, extractor=Extractor(), client=client)["inv_001.pdf"]

    assert result.diagnosis.startswith("AI_CALL_FAILED:")
    assert len(fake.messages.calls) == 3


def test_pacing_only_between_inference_calls(config):
    waits = []
    pacer = CallPacer(5.0, clock=lambda: 0.0, sleep=waits.append)
    client, fake = client_for(config, text_message("Reason."))
    extractor = Extractor(by_name={"big.pdf": Evidence.too_large("big.pdf", 5, 3)})
    records = [make_record(file_name="a.pdf"), make_record(file_name="big.pdf"), make_record(file_name="b.pdf")]

    analyze_records(records, config, extractor=extractor, client=client, pacer=pacer)

    assert len(fake.messages.calls) == 2
    assert waits == [5.0]


def test_main_with_inline_records_writes_results_in_order(config):
    client, fake = client_for(config, text_message("Missing PO.\nSUGGESTED_FIX_DATA: {\"po_num\": \"PO-991\"}"))
    records = [invoice_item(file_name=f"{n}.pdf", report_type="PO_NOT_FOUND") for n in ("c", "a", "b")]

    response = analyze_exceptions.main(
        {"records": records, "include_pdf_content": False, "limit": 2},
        config=config, client=client,
    )

    assert response["success"] is True
    assert response["total_candidates"] == 2
    assert response["with_suggested_fix"] == 2
    written = json.loads(config.analysis_results_file.read_text())
    assert list(written) == ["c.pdf", "a.pdf"]
    assert written["c.pdf"]["suggested_fix"] == {"po_num": "PO-991"}
    assert written["c.pdf"]["original_snapshot"]["inv_num"] == "INV-001"
    assert {entry["stage"] for entry in written.values()} == {"parsed"}


def test_main_fetches_from_store_and_reads_cached_pdfs(config):
    table = FakeTable(pages=[{"Items": [invoice_item(file_name="cached.pdf"), invoice_item(file_name="absent.pdf")]}])
    config.downloads_dir.mkdir(parents=True)
    (config.downloads_dir / "cached.pdf").write_bytes(b"%PDF-1.4")
    client, fake = client_for(config, text_message(SHIP_TO_REPLY))
    extractor = Extractor()

    response = analyze_exceptions.main(
        {"group_id": "G-100", "report_types": ["SHIPTOISSUE"], "download_files": False},
        config=config, store=RecordStore(table), client=client, extractor=extractor,
    )

    assert response["success"] is True
    assert extractor.calls == ["cached.pdf"]
    assert response["results"]["absent.pdf"]["diagnosis"].startswith("PDF text extraction failed.")
    assert response["results"]["cached.pdf"]["suggested_fix"]["confidence"] == 95
    fetched = json.loads(config.fetched_data_file.read_text())
    assert list(fetched) == ["SHIPTOISSUE"]
    assert [item["file_name"] for item in fetched["SHIPTOISSUE"]] == ["cached.pdf", "absent.pdf"]
    assert fetched["SHIPTOISSUE"][0]["group_id"] == "G-100"


def test_main_rejects_invalid_payloads(config):
    assert analyze_exceptions.main({}, config=config)["success"] is False
    assert analyze_exceptions.main({"records": "nope"}, config=config)["success"] is False
    assert analyze_exceptions.main({"records": [{"file_name": "a.pdf"}]}, config=config)["success"] is False
    assert analyze_exceptions.main({"records": [], "limit": "ten"}, config=config)["success"] is False

    store = RecordStore(FakeTable())
    response = analyze_exceptions.main({"group_id": "G-100"}, config=config, store=store)
    assert response["success"] is False
    assert "report_types" in response["error"]


def test_clear_previous_data(config):
    config.downloads_dir.mkdir(parents=True)
    (config.downloads_dir / "x.pdf").write_bytes(b"%PDF")
    config.analysis_results_file.write_text("{}")
    config.fetched_data_file.write_text("{}")

    removed = analyze_exceptions.clear_previous_data(config)

    assert len(removed) == 3
    assert not config.fetched_data_file.exists()
    assert not config.downloads_dir.exists()
    assert not config.analysis_results_file.exists()


def test_main_limit_zero_analyzes_nothing(config):
    client, fake = client_for(config, text_message("Missing PO."))
    records = [invoice_item(file_name=f"{n}.pdf", report_type="PO_NOT_FOUND") for n in ("a", "b", "c")]

    response = analyze_exceptions.main(
        {"records": records, "include_pdf_content": False, "limit": 0},
        config=config, client=client,
    )

    assert response["success"] is True
    assert response["total_candidates"] == 0
    assert response["results"] == {}
    assert fake.messages.calls == []
    assert json.loads(config.analysis_results_file.read_text()) == {}


def test_main_rejects_negative_or_bool_limit(config):
    records = [invoice_item(report_type="PO_NOT_FOUND")]

    assert analyze_exceptions.main({"records": records, "limit": -1}, config=config)["success"] is False
    assert analyze_exceptions.main({"records": records, "limit": True}, config=config)["success"] is False


def test_main_string_false_withholds_evidence(config):
    client, fake = client_for(config, text_message("Missing PO."))
    extractor = Extractor()

    response = analyze_exceptions.main(
        {"records": [invoice_item(report_type="PO_NOT_FOUND")], "include_pdf_content": "false"},
        config=config, client=client, extractor=extractor,
    )

    assert response["success"] is True
    assert extractor.calls == []
    assert NO_EVIDENCE_NOTE in fake.messages.calls[0]["messages"][0]["content"]


def test_main_rejects_unrecognized_flag_values(config):
    client, fake = client_for(config, text_message("Missing PO."))
    records = [invoice_item(report_type="PO_NOT_FOUND")]

    for flag in ("include_pdf_content", "download_files", "clear_previous_data"):
        response = analyze_exceptions.main({"records": records, flag: "nope"}, config=config, client=client)
        assert response["success"] is False
        assert flag in response["error"]
    assert fake.messages.calls == []
