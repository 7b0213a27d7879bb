"""File and memory-field validation.

``validate_file`` runs every check independently and collects all
violations; it never short-circuits.  The content screen (executable magic
numbers, script-injection strings) is a heuristic, not a guarantee.
"""
import logging
import re
import unicodedata
from typing import List, Optional, Sequence

from weaver.memories.schemas import Category, Privacy

from .schemas import (
    MemoryFieldsResult,
    UploadConfig,
    ValidationIssue,
    ValidationResult,
)

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 255
CONTENT_SCAN_BYTES = 1024

# Hard reject regardless of upload configuration
EXECUTABLE_EXTENSIONS = frozenset(
    {"exe", "bat", "cmd", "scr", "pif", "com", "vbs", "js", "jar", "msi", "ps1", "sh"}
)

EXECUTABLE_SIGNATURES = (
    (b"MZ", "PE"),
    (b"\x7fELF", "ELF"),
    (b"\xfe\xed\xfa\xce", "Mach-O"),
    (b"\xfe\xed\xfa\xcf", "Mach-O"),
    (b"\xce\xfa\xed\xfe", "Mach-O"),
    (b"\xcf\xfa\xed\xfe", "Mach-O"),
)

SUSPICIOUS_PATTERNS = (
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"<script\b", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"document\.write", re.IGNORECASE),
    re.compile(r"window\.location", re.IGNORECASE),
)

# Magic numbers for the common upload types
CONTENT_SIGNATURES = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
    (b"%PDF", "application/pdf"),
    (b"ID3", "audio/mpeg"),
    (b"\xff\xfb", "audio/mpeg"),
    (b"\xff\xf3", "audio/mpeg"),
    (b"\xff\xf2", "audio/mpeg"),
    (b"fLaC", "audio/flac"),
    (b"OggS", "audio/ogg"),
    (b"\x1a\x45\xdf\xa3", "video/x-matroska"),
)

# Declared types that a single magic number legitimately covers
_EQUIVALENT_TYPES = {
    "video/mp4": {"video/mp4", "audio/mp4", "audio/x-m4a", "video/quicktime"},
    "audio/mpeg": {"audio/mpeg", "audio/mp3"},
    "video/x-matroska": {"video/x-matroska", "video/webm"},
    "image/jpeg": {"image/jpeg", "image/jpg"},
}

_RESERVED_CHARS = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE = re.compile(r"\s+")
_UNDERSCORES = re.compile(r"_{2,}")

MAX_TAGS = 10
MAX_TAG_LENGTH = 30
MIN_TITLE_LENGTH = 3
MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 1000


def get_extension(filename: str) -> str:
    """Lower-cased extension without the dot, or "" if there is none."""
    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    if "." not in base.strip("."):
        return ""
    return base.rsplit(".", 1)[-1].lower()


def sanitize_filename(filename: str) -> str:
    """Make a filename safe to use inside a storage key.

    Drops control characters, replaces path separators and reserved
    characters, collapses whitespace and truncates to 255 UTF-8 bytes.
    """
    cleaned = "".join(ch for ch in filename if unicodedata.category(ch)[0] != "C")
    cleaned = _RESERVED_CHARS.sub("_", cleaned)
    cleaned = _WHITESPACE.sub("_", cleaned.strip())
    cleaned = _UNDERSCORES.sub("_", cleaned)
    cleaned = cleaned.lstrip(".")
    encoded = cleaned.encode("utf-8")[:MAX_FILENAME_LENGTH]
    cleaned = encoded.decode("utf-8", errors="ignore")
    return cleaned or "unnamed"


def detect_content_type(prefix: bytes) -> Optional[str]:
    """Guess a MIME type from leading magic bytes."""
    if len(prefix) >= 12 and prefix[:4] == b"RIFF":
        kind = prefix[8:12]
        if kind == b"WEBP":
            return "image/webp"
        if kind == b"WAVE":
            return "audio/wav"
        if kind == b"AVI ":
            return "video/x-msvideo"
    if len(prefix) >= 8 and prefix[4:8] == b"ftyp":
        return "video/mp4"
    for signature, mime in CONTENT_SIGNATURES:
        if prefix.startswith(signature):
            return mime
    return None


def _types_agree(detected: str, declared: str) -> bool:
    return declared == detected or declared in _EQUIVALENT_TYPES.get(detected, set())


def scan_content(prefix: bytes) -> List[ValidationIssue]:
    """Heuristic screen of the leading bytes for executables and script injection."""
    issues: List[ValidationIssue] = []
    for signature, kind in EXECUTABLE_SIGNATURES:
        if prefix.startswith(signature):
            issues.append(ValidationIssue(
                code="executable_content",
                message=f"Executable file detected ({kind} signature)",
            ))
            break

    text = prefix[:CONTENT_SCAN_BYTES].decode("utf-8", errors="ignore")
    for pattern in SUSPICIOUS_PATTERNS:
        if pattern.search(text):
            issues.append(ValidationIssue(
                code="suspicious_content",
                message="Suspicious script content detected",
            ))
            break
    return issues


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.2f}".rstrip("0").rstrip(".") + f" {units[index]}"


def validate_file(
    name: str,
    declared_content_type: str,
    size: int,
    raw_prefix: bytes,
    config: UploadConfig,
) -> ValidationResult:
    """Validate one candidate file against *config*.

    Args:
        name: Declared filename
        declared_content_type: MIME type the client claimed
        size: Declared size in bytes
        raw_prefix: Leading bytes of the file (only the first 1024 are scanned)
        config: Upload configuration to validate against

    Returns:
        ValidationResult; ``accepted`` is False when any hard reason exists.
    """
    reasons: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []
    extension = get_extension(name)
    content_type = (declared_content_type or "").split(";")[0].strip().lower()

    if not extension:
        reasons.append(ValidationIssue(
            code="missing_extension",
            message="File must have an extension",
        ))
    elif extension not in config.allowed_extensions:
        reasons.append(ValidationIssue(
            code="extension_not_allowed",
            message=f"File extension '.{extension}' is not allowed",
        ))

    if content_type not in config.allowed_mime_types:
        reasons.append(ValidationIssue(
            code="content_type_not_allowed",
            message=f"Content type '{content_type or 'unknown'}' is not allowed",
        ))

    detected = detect_content_type(raw_prefix[:CONTENT_SCAN_BYTES])
    if detected and not _types_agree(detected, content_type):
        warnings.append(ValidationIssue(
            code="content_type_mismatch",
            message=f"MIME type mismatch: content looks like {detected}, declared {content_type}",
        ))

    max_size = config.max_size
    if size < 1:
        reasons.append(ValidationIssue(code="file_empty", message="File cannot be empty"))
    elif size > max_size:
        reasons.append(ValidationIssue(
            code="file_too_large",
            message=(
                f"File size {format_file_size(size)} exceeds maximum "
                f"{format_file_size(max_size)}"
            ),
        ))

    if len(name) > MAX_FILENAME_LENGTH:
        reasons.append(ValidationIssue(
            code="filename_too_long",
            message=f"File name too long (max {MAX_FILENAME_LENGTH} characters)",
        ))

    if extension in EXECUTABLE_EXTENSIONS:
        reasons.append(ValidationIssue(
            code="executable_extension",
            message="Executable file types are not allowed for security reasons",
        ))

    reasons.extend(scan_content(raw_prefix))

    result = ValidationResult(
        accepted=not reasons,
        reasons=reasons,
        warnings=warnings,
        sanitized_name=sanitize_filename(name),
        extension=extension,
        detected_content_type=detected,
    )
    if not result.accepted:
        logger.info("Rejected upload %r: %s", name, ", ".join(result.reason_codes))
    return result


def normalize_tags(tags: Sequence[str]) -> List[str]:
    """Trim, lower-case and de-duplicate tags, keeping first-seen order."""
    normalized: List[str] = []
    for tag in tags:
        value = _WHITESPACE.sub(" ", str(tag).strip().lower())[:MAX_TAG_LENGTH]
        if value and value not in normalized:
            normalized.append(value)
    return normalized[:MAX_TAGS]


def validate_memory_fields(
    title: Optional[str],
    description: Optional[str],
    category: Optional[str] = None,
    privacy: Optional[str] = None,
    tags: Optional[Sequence[str]] = None,
) -> MemoryFieldsResult:
    """Validate and normalize the free-form fields of a memory."""
    reasons: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    title = (title or "").strip()
    if len(title) < MIN_TITLE_LENGTH:
        reasons.append(ValidationIssue(
            code="title_too_short",
            message=f"Title must be at least {MIN_TITLE_LENGTH} characters long",
        ))
    elif len(title) > MAX_TITLE_LENGTH:
        reasons.append(ValidationIssue(
            code="title_too_long",
            message=f"Title must be {MAX_TITLE_LENGTH} characters or less",
        ))

    description = (description or "").strip()
    if not description:
        reasons.append(ValidationIssue(
            code="description_required",
            message="Description is required",
        ))
    elif len(description) > MAX_DESCRIPTION_LENGTH:
        reasons.append(ValidationIssue(
            code="description_too_long",
            message=f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less",
        ))

    normalized_category = Category.parse(category)
    if category and normalized_category is None:
        warnings.append(ValidationIssue(
            code="unknown_category",
            message='Invalid category, will default to "other"',
        ))

    normalized_privacy = Privacy.parse(privacy)
    if privacy and normalized_privacy is None:
        warnings.append(ValidationIssue(
            code="unknown_privacy",
            message='Invalid privacy level, will default to "members_only"',
        ))

    raw_tags = list(tags or [])
    if len(raw_tags) > MAX_TAGS:
        warnings.append(ValidationIssue(
            code="too_many_tags",
            message=f"Only the first {MAX_TAGS} tags will be saved",
        ))
    for tag in raw_tags:
        if len(str(tag).strip()) > MAX_TAG_LENGTH:
            warnings.append(ValidationIssue(
                code="tag_truncated",
                message=f'Tag "{tag}" is too long and will be truncated',
            ))

    return MemoryFieldsResult(
        reasons=reasons,
        warnings=warnings,
        title=title,
        description=description,
        category=(normalized_category or Category.OTHER).value,
        privacy=(normalized_privacy or Privacy.MEMBERS_ONLY).value,
        tags=normalize_tags(raw_tags),
    )
