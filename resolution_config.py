import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class ResolutionConfig:
    """Configuration for the exception resolution pipeline."""

    # Anthropic settings
    anthropic_api_key: Optional[str] = None
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 1024
    temperature: float = 0.0

    # Retry / pacing settings
    max_attempts: int = 3
    rate_limit_wait_sec: float = 60.0
    inter_call_delay_sec: float = 5.0

    # Evidence settings
    max_pages: int = 3
    ocr_dpi: int = 175
    ocr_lang: str = "eng"
    evidence_char_limit: int = 3000

    # Update settings
    confidence_threshold: int = 90

    # AWS settings
    aws_region: str = "eu-north-1"
    table_name: str = "Invoices"
    s3_bucket_name: str = "company-documents-2025"
    s3_key_prefix: str = "invoices/completed/"

    # Local artifacts
    output_dir: str = "data"

    @property
    def analysis_results_file(self) -> Path:
        return Path(self.output_dir) / "analysisResults.json"

    @property
    def update_plan_file(self) -> Path:
        return Path(self.output_dir) / "updatePlan.json"

    @property
    def update_stats_file(self) -> Path:
        return Path(self.output_dir) / "updateStats.json"

    @property
    def fetched_data_file(self) -> Path:
        return Path(self.output_dir) / "fetchedData.json"

    @property
    def downloads_dir(self) -> Path:
        return Path(self.output_dir) / "downloaded_files"

    @classmethod
    def from_env(cls) -> "ResolutionConfig":
        """Build configuration from environment variables (.env supported)."""
        defaults = cls()
        return cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            model=os.getenv("ANTHROPIC_MODEL", defaults.model),
            max_tokens=int(os.getenv("ANTHROPIC_MAX_TOKENS", defaults.max_tokens)),
            max_attempts=int(os.getenv("MAX_INFERENCE_ATTEMPTS", defaults.max_attempts)),
            rate_limit_wait_sec=float(os.getenv("RATE_LIMIT_WAIT_SEC", defaults.rate_limit_wait_sec)),
            inter_call_delay_sec=float(os.getenv("INTER_CALL_DELAY_SEC", defaults.inter_call_delay_sec)),
            max_pages=int(os.getenv("MAX_EVIDENCE_PAGES", defaults.max_pages)),
            ocr_dpi=int(os.getenv("OCR_DPI", defaults.ocr_dpi)),
            ocr_lang=os.getenv("OCR_LANG", defaults.ocr_lang),
            confidence_threshold=int(os.getenv("CONFIDENCE_THRESHOLD", defaults.confidence_threshold)),
            aws_region=os.getenv("AWS_REGION", defaults.aws_region),
            table_name=os.getenv("INVOICES_TABLE_NAME", defaults.table_name),
            s3_bucket_name=os.getenv("S3_BUCKET_NAME", defaults.s3_bucket_name),
            s3_key_prefix=os.getenv("S3_KEY_PREFIX", defaults.s3_key_prefix),
            output_dir=os.getenv("OUTPUT_DIR", defaults.output_dir),
        )


def parse_flag(value, name: str, default: bool) -> bool:
    """Request flag: a JSON bool, or the strings "true"/"false". Anything else is rejected."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"{name} must be true or false, got {value!r}")


# Default configuration
DEFAULT_CONFIG = ResolutionConfig.from_env()
