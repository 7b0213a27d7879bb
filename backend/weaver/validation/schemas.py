"""Pydantic schemas for upload validation.

- FileCategory: coarse upload categories a user can allow for an upload
- UploadConfig: what an upload accepts (categories, extensions, limits)
- ValidationIssue: one violation with a machine-readable code
- ValidationResult: outcome of validating one candidate file
"""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class FileCategory(str, Enum):
    """Upload categories.

    MIXED accepts the union of every other category.
    """
    IMAGES = "Images"
    DOCUMENTS = "Documents"
    AUDIO = "Audio"
    VIDEO = "Video"
    MIXED = "Mixed"


MIB = 1024 * 1024

# Default ceiling when no configured category raises it
DEFAULT_MAX_FILE_SIZE_BYTES = 50 * MIB

SIZE_LIMITS: Dict[FileCategory, int] = {
    FileCategory.IMAGES: 50 * MIB,
    FileCategory.DOCUMENTS: 50 * MIB,
    FileCategory.AUDIO: 100 * MIB,
    FileCategory.VIDEO: 200 * MIB,
    FileCategory.MIXED: 50 * MIB,
}

ALLOWED_MIME_TYPES: Dict[FileCategory, List[str]] = {
    FileCategory.IMAGES: [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/bmp",
        "image/svg+xml",
    ],
    FileCategory.DOCUMENTS: [
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/plain",
        "application/rtf",
    ],
    FileCategory.AUDIO: [
        "audio/mpeg",
        "audio/wav",
        "audio/flac",
        "audio/mp4",
        "audio/x-m4a",
        "audio/ogg",
        "audio/x-ms-wma",
    ],
    FileCategory.VIDEO: [
        "video/mp4",
        "video/quicktime",
        "video/x-msvideo",
        "video/x-matroska",
        "video/webm",
    ],
}

ALLOWED_EXTENSIONS: Dict[FileCategory, List[str]] = {
    FileCategory.IMAGES: ["jpg", "jpeg", "png", "gif", "webp", "bmp", "svg"],
    FileCategory.DOCUMENTS: ["pdf", "doc", "docx", "txt", "rtf"],
    FileCategory.AUDIO: ["mp3", "wav", "flac", "m4a", "ogg", "wma"],
    FileCategory.VIDEO: ["mp4", "mov", "avi", "mkv", "webm"],
}


def _expand(categories: List[FileCategory]) -> List[FileCategory]:
    if FileCategory.MIXED in categories:
        return [c for c in FileCategory if c is not FileCategory.MIXED]
    return categories


def allowed_mime_types(categories: List[FileCategory]) -> List[str]:
    """MIME allow-list for a set of categories, de-duplicated, order preserved."""
    seen: List[str] = []
    for category in _expand(categories):
        for mime in ALLOWED_MIME_TYPES.get(category, []):
            if mime not in seen:
                seen.append(mime)
    return seen


def extensions_for(categories: List[FileCategory]) -> List[str]:
    seen: List[str] = []
    for category in _expand(categories):
        for ext in ALLOWED_EXTENSIONS.get(category, []):
            if ext not in seen:
                seen.append(ext)
    return seen


def max_size_for_categories(categories: List[FileCategory]) -> int:
    """Largest size ceiling among *categories* (never below the 50 MiB default)."""
    max_size = DEFAULT_MAX_FILE_SIZE_BYTES
    for category in categories:
        max_size = max(max_size, SIZE_LIMITS.get(category, 0))
    return max_size


class UploadConfig(BaseModel):
    """What an upload accepts.

    ``allowed_extensions`` defaults to the extensions of the allowed
    categories.  ``max_size_bytes`` overrides the category ceiling when set.
    """
    allowed_categories: List[FileCategory] = Field(default_factory=lambda: [FileCategory.MIXED])
    allowed_extensions: List[str] = Field(default_factory=list)
    max_files: int = Field(1, ge=1, le=10)
    max_size_bytes: Optional[int] = Field(None, ge=1)
    storage_duration_days: int = Field(0, ge=0, le=365)

    @model_validator(mode="after")
    def _derive_extensions(self) -> "UploadConfig":
        if not self.allowed_extensions:
            self.allowed_extensions = extensions_for(self.allowed_categories)
        else:
            self.allowed_extensions = [e.lower().lstrip(".") for e in self.allowed_extensions]
        return self

    @property
    def max_size(self) -> int:
        if self.max_size_bytes is not None:
            return self.max_size_bytes
        return max_size_for_categories(self.allowed_categories)

    @property
    def allowed_mime_types(self) -> List[str]:
        return allowed_mime_types(self.allowed_categories)


class ValidationIssue(BaseModel):
    code: str = Field(..., description="Machine-readable reason code")
    message: str = Field(..., description="Human-readable explanation")


class ValidationResult(BaseModel):
    """Outcome of validating one candidate file.

    ``reasons`` are hard rejections; ``warnings`` are advisory only.
    """
    accepted: bool
    reasons: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    sanitized_name: str
    extension: str = ""
    detected_content_type: Optional[str] = None

    @property
    def reason_codes(self) -> List[str]:
        return [r.code for r in self.reasons]


class MemoryFieldsResult(BaseModel):
    """Outcome of validating the free-form memory fields."""
    reasons: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    title: str = ""
    description: str = ""
    category: str = "other"
    privacy: str = "members_only"
    tags: List[str] = Field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return not self.reasons
