"""
Input Validation Utilities
Boundary validation for project, milestone and dispute inputs
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from config import Config
from utils.currency import SUPPORTED_CURRENCIES, normalize_currency, to_decimal
from utils.datetime_helpers import ensure_naive_datetime
from utils.error_handler import ValidationError, ErrorCodes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvidenceFile:
    """Validated evidence attachment reference (storage is external)"""

    filename: str
    url: Optional[str]
    file_type: Optional[str]
    size_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "url": self.url,
            "type": self.file_type,
            "size_bytes": self.size_bytes,
        }


class InputValidator:
    """Boundary validation; every failure raises ValidationError"""

    ALLOWED_EVIDENCE_EXTENSIONS = {
        ".pdf", ".doc", ".docx", ".odt", ".rtf", ".txt", ".md",
        ".xls", ".xlsx", ".csv", ".ppt", ".pptx",
        ".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp",
        ".mp4", ".mov", ".webm", ".mp3", ".wav",
        ".zip",
    }
    DANGEROUS_EXTENSIONS = {
        ".exe", ".bat", ".com", ".scr", ".vbs", ".js", ".jar", ".msi", ".pif", ".lnk",
    }

    @classmethod
    def validate_text(
        cls,
        field_name: str,
        value: Optional[str],
        min_length: int = 1,
        max_length: int = 5000,
        required: bool = True,
    ) -> Optional[str]:
        if value is None or not str(value).strip():
            if required:
                raise ValidationError(
                    f"{field_name} is required",
                    code=ErrorCodes.MISSING_REQUIRED_FIELD,
                    details={"field": field_name},
                )
            return None

        text = str(value).strip()
        if len(text) < min_length or len(text) > max_length:
            raise ValidationError(
                f"{field_name} must be between {min_length} and {max_length} characters",
                code=ErrorCodes.VALUE_OUT_OF_RANGE,
                details={"field": field_name, "length": len(text)},
            )
        return text

    @classmethod
    def validate_dispute_reason(cls, reason: Optional[str]) -> str:
        return cls.validate_text(
            "Dispute reason",
            reason,
            min_length=Config.DISPUTE_REASON_MIN_LENGTH,
            max_length=Config.DISPUTE_REASON_MAX_LENGTH,
        )

    @classmethod
    def validate_currency(cls, currency: Optional[str]) -> str:
        code = normalize_currency(currency)
        if code not in SUPPORTED_CURRENCIES:
            raise ValidationError(
                f"Unsupported currency: {currency}",
                code=ErrorCodes.UNSUPPORTED_CURRENCY,
                details={"supported": SUPPORTED_CURRENCIES},
            )
        return code

    @classmethod
    def validate_minor_amount(
        cls,
        field_name: str,
        amount: Any,
        currency: str,
        minimum: Optional[Decimal] = None,
        maximum: Optional[Decimal] = None,
    ) -> int:
        """Validate an integer minor-unit amount against major-unit bounds"""
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(
                f"{field_name} must be an integer amount in minor units",
                code=ErrorCodes.INVALID_AMOUNT,
                details={"field": field_name},
            )
        if amount <= 0:
            raise ValidationError(
                f"{field_name} must be positive",
                code=ErrorCodes.INVALID_AMOUNT,
                details={"field": field_name, "amount": amount},
            )

        major = to_decimal(amount, currency)
        if minimum is not None and major < minimum:
            raise ValidationError(
                f"{field_name} must be at least {minimum} {currency}",
                code=ErrorCodes.VALUE_OUT_OF_RANGE,
                details={"field": field_name, "amount": amount},
            )
        if maximum is not None and major > maximum:
            raise ValidationError(
                f"{field_name} cannot exceed {maximum} {currency}",
                code=ErrorCodes.VALUE_OUT_OF_RANGE,
                details={"field": field_name, "amount": amount},
            )
        return amount

    @classmethod
    def validate_future_datetime(cls, field_name: str, value: Any, now: datetime) -> datetime:
        if not isinstance(value, datetime):
            raise ValidationError(
                f"{field_name} must be a datetime",
                code=ErrorCodes.INVALID_FORMAT,
                details={"field": field_name},
            )
        value = ensure_naive_datetime(value)
        if value <= now:
            raise ValidationError(
                f"{field_name} must be in the future",
                code=ErrorCodes.VALUE_OUT_OF_RANGE,
                details={"field": field_name},
            )
        return value

    @classmethod
    def validate_auto_approve_days(cls, days: Optional[int]) -> int:
        if days is None:
            return Config.DEFAULT_AUTO_APPROVE_DAYS
        if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= Config.MAX_AUTO_APPROVE_DAYS:
            raise ValidationError(
                f"Auto-approve days must be between 1 and {Config.MAX_AUTO_APPROVE_DAYS}",
                code=ErrorCodes.VALUE_OUT_OF_RANGE,
            )
        return days

    @classmethod
    def validate_evidence_files(cls, files: Optional[Iterable[Dict[str, Any]]]) -> List[EvidenceFile]:
        """
        Check evidence attachments against the extension allow-list and size cap.

        Each item is a mapping with filename, size_bytes and optional url/type.
        """
        validated = []
        items = list(files or [])
        if len(items) > Config.MAX_EVIDENCE_FILES:
            raise ValidationError(
                f"At most {Config.MAX_EVIDENCE_FILES} evidence files are allowed",
                code=ErrorCodes.FILE_REJECTED,
            )

        for item in items:
            filename = str(item.get("filename") or "").strip()
            if not filename:
                raise ValidationError("Evidence filename is required", code=ErrorCodes.FILE_REJECTED)

            extension = os.path.splitext(filename)[1].lower()
            if extension in cls.DANGEROUS_EXTENSIONS or extension not in cls.ALLOWED_EVIDENCE_EXTENSIONS:
                raise ValidationError(
                    f"File type not allowed: {filename}",
                    code=ErrorCodes.FILE_REJECTED,
                    details={"filename": filename, "extension": extension},
                )

            size = item.get("size_bytes", item.get("size", 0))
            if isinstance(size, bool) or not isinstance(size, int) or size < 0:
                raise ValidationError(
                    f"Invalid file size for {filename}",
                    code=ErrorCodes.FILE_REJECTED,
                )
            if size > Config.MAX_EVIDENCE_FILE_SIZE_BYTES:
                raise ValidationError(
                    f"File too large: {filename} exceeds {Config.MAX_EVIDENCE_FILE_SIZE_BYTES // (1024 * 1024)}MB",
                    code=ErrorCodes.FILE_REJECTED,
                    details={"filename": filename, "size_bytes": size},
                )

            validated.append(
                EvidenceFile(
                    filename=filename,
                    url=item.get("url"),
                    file_type=item.get("type") or item.get("file_type"),
                    size_bytes=size,
                )
            )
        return validated
