"""Tests for file and memory-field validation."""
from weaver.validation.schemas import (
    MIB,
    FileCategory,
    UploadConfig,
    allowed_mime_types,
    max_size_for_categories,
)
from weaver.validation.service import (
    detect_content_type,
    format_file_size,
    get_extension,
    normalize_tags,
    sanitize_filename,
    validate_file,
    validate_memory_fields,
)

from conftest import JPEG_BYTES, PNG_BYTES


def images_config() -> UploadConfig:
    return UploadConfig(allowed_categories=[FileCategory.IMAGES])


class TestUploadConfig:
    def test_mixed_is_union_of_all_categories(self):
        config = UploadConfig()
        assert "png" in config.allowed_extensions
        assert "mp4" in config.allowed_extensions
        assert "application/pdf" in config.allowed_mime_types

    def test_extensions_derived_from_categories(self):
        config = UploadConfig(allowed_categories=[FileCategory.AUDIO])
        assert "mp3" in config.allowed_extensions
        assert "png" not in config.allowed_extensions

    def test_explicit_extensions_are_normalized(self):
        config = UploadConfig(allowed_extensions=[".PNG", "Jpg"])
        assert config.allowed_extensions == ["png", "jpg"]

    def test_size_limits_per_category(self):
        assert max_size_for_categories([FileCategory.IMAGES]) == 50 * MIB
        assert max_size_for_categories([FileCategory.AUDIO]) == 100 * MIB
        assert max_size_for_categories([FileCategory.IMAGES, FileCategory.VIDEO]) == 200 * MIB
        assert max_size_for_categories([]) == 50 * MIB

    def test_explicit_max_size_overrides_category(self):
        config = UploadConfig(allowed_categories=[FileCategory.VIDEO], max_size_bytes=1024)
        assert config.max_size == 1024

    def test_allowed_mime_types_dedupes(self):
        types = allowed_mime_types([FileCategory.IMAGES, FileCategory.IMAGES])
        assert len(types) == len(set(types))


class TestValidateFile:
    def test_accepts_valid_png(self):
        result = validate_file("photo.png", "image/png", len(PNG_BYTES), PNG_BYTES, images_config())
        assert result.accepted
        assert result.reasons == []
        assert result.warnings == []
        assert result.extension == "png"
        assert result.detected_content_type == "image/png"

    def test_rejects_executable_regardless_of_content_type(self):
        result = validate_file("payload.exe", "image/png", 100, PNG_BYTES, UploadConfig())
        assert not result.accepted
        assert "executable_extension" in result.reason_codes

    def test_rejects_empty_file(self):
        result = validate_file("photo.png", "image/png", 0, b"", images_config())
        assert not result.accepted
        assert "file_empty" in result.reason_codes
        assert any("cannot be empty" in r.message for r in result.reasons)

    def test_size_boundary(self):
        config = images_config()
        at_limit = validate_file("photo.png", "image/png", 50 * MIB, PNG_BYTES, config)
        over = validate_file("photo.png", "image/png", 50 * MIB + 1, PNG_BYTES, config)
        assert at_limit.accepted
        assert not over.accepted
        assert over.reason_codes == ["file_too_large"]

    def test_video_allows_larger_files(self):
        config = UploadConfig(allowed_categories=[FileCategory.VIDEO])
        prefix = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 16
        result = validate_file("clip.mp4", "video/mp4", 150 * MIB, prefix, config)
        assert result.accepted

    def test_missing_extension(self):
        result = validate_file("README", "text/plain", 10, b"hello", UploadConfig())
        assert "missing_extension" in result.reason_codes

    def test_extension_not_in_allowed_categories(self):
        result = validate_file("song.mp3", "audio/mpeg", 10, b"ID3", images_config())
        assert "extension_not_allowed" in result.reason_codes
        assert "content_type_not_allowed" in result.reason_codes

    def test_mime_mismatch_is_only_a_warning(self):
        result = validate_file("photo.png", "image/png", len(JPEG_BYTES), JPEG_BYTES, images_config())
        assert result.accepted
        assert [w.code for w in result.warnings] == ["content_type_mismatch"]

    def test_executable_magic_number_rejected(self):
        prefix = b"MZ\x90\x00" + b"\x00" * 60
        result = validate_file("photo.png", "image/png", len(prefix), prefix, images_config())
        assert "executable_content" in result.reason_codes

    def test_script_content_rejected(self):
        body = b"hello <SCRIPT>alert(1)</script>"
        result = validate_file("notes.txt", "text/plain", len(body), body, UploadConfig())
        assert "suspicious_content" in result.reason_codes

    def test_script_beyond_scan_window_is_ignored(self):
        body = b"a" * 2048 + b"<script>"
        result = validate_file("notes.txt", "text/plain", len(body), body, UploadConfig())
        assert result.accepted

    def test_collects_all_violations(self):
        result = validate_file("x" * 300 + ".exe", "application/x-msdownload", 0, b"MZ", UploadConfig())
        codes = set(result.reason_codes)
        assert {
            "extension_not_allowed",
            "content_type_not_allowed",
            "file_empty",
            "filename_too_long",
            "executable_extension",
            "executable_content",
        } <= codes

    def test_sanitized_name_is_returned(self):
        result = validate_file("my photo?.png", "image/png", 10, PNG_BYTES, images_config())
        assert result.sanitized_name == "my_photo_.png"


class TestHelpers:
    def test_get_extension(self):
        assert get_extension("a/b/Photo.JPG") == "jpg"
        assert get_extension(".bashrc") == ""
        assert get_extension("archive.tar.gz") == "gz"
        assert get_extension("noext") == ""

    def test_sanitize_strips_path_separators(self):
        name = sanitize_filename("../../etc/passwd")
        assert "/" not in name
        assert not name.startswith(".")

    def test_sanitize_drops_control_characters(self):
        assert sanitize_filename("my  file\x00name.png") == "my_filename.png"

    def test_sanitize_truncates_to_255_bytes(self):
        name = sanitize_filename("é" * 200 + ".png")
        assert len(name.encode("utf-8")) <= 255

    def test_sanitize_empty_name(self):
        assert sanitize_filename("...") == "unnamed"

    def test_detect_content_type(self):
        assert detect_content_type(PNG_BYTES) == "image/png"
        assert detect_content_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"
        assert detect_content_type(b"%PDF-1.7") == "application/pdf"
        assert detect_content_type(b"plain text") is None

    def test_format_file_size(self):
        assert format_file_size(0) == "0 Bytes"
        assert format_file_size(1024) == "1 KB"
        assert format_file_size(50 * MIB) == "50 MB"


class TestMemoryFields:
    def test_valid_fields(self):
        result = validate_memory_fields("Summer trip", "Beach day", "Personal", "Members Only", ["Fun"])
        assert result.accepted
        assert result.category == "personal"
        assert result.privacy == "members_only"
        assert result.tags == ["fun"]
        assert result.warnings == []

    def test_title_too_short(self):
        result = validate_memory_fields("hi", "desc")
        assert [r.code for r in result.reasons] == ["title_too_short"]

    def test_title_too_long(self):
        result = validate_memory_fields("x" * 101, "desc")
        assert [r.code for r in result.reasons] == ["title_too_long"]

    def test_description_required(self):
        result = validate_memory_fields("Title", "   ")
        assert [r.code for r in result.reasons] == ["description_required"]

    def test_unknown_category_and_privacy_default_with_warnings(self):
        result = validate_memory_fields("Title", "desc", "cooking", "secret")
        assert result.accepted
        assert result.category == "other"
        assert result.privacy == "members_only"
        assert {w.code for w in result.warnings} == {"unknown_category", "unknown_privacy"}

    def test_tags_are_capped_and_truncated(self):
        tags = [f"tag{i}" for i in range(12)] + ["x" * 40]
        result = validate_memory_fields("Title", "desc", tags=tags)
        codes = [w.code for w in result.warnings]
        assert "too_many_tags" in codes
        assert "tag_truncated" in codes
        assert len(result.tags) == 10

    def test_normalize_tags_dedupes_preserving_order(self):
        assert normalize_tags(["Fun", "fun ", "Party", ""]) == ["fun", "party"]
