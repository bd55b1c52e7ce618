import base64
import io

import pytest
from PIL import Image

from chatdesk.core.exceptions import AttachmentError
from chatdesk.schemas.content import AudioBlock, FileBlock, ImageBlock, TextBlock, VideoBlock
from chatdesk.services.attachments import (
    COMPRESSION_TARGET_BYTES,
    MAX_FILES_PER_MESSAGE,
    MAX_IMAGE_DIMENSION,
    UploadedFile,
    asset_filename,
    build_content,
    compress_image,
    encode,
    file_category,
    preview_data_uri,
    validate_files,
)
from tests.mocks.images import noisy_png

PNG = UploadedFile(name="cat.png", mime_type="image/png", data=b"\x89PNG")


class TestFileCategory:
    @pytest.mark.parametrize(
        "mime,category",
        [
            ("image/webp", "image"),
            ("application/pdf", "document"),
            ("audio/mpeg", "audio"),
            ("video/mp4", "video"),
            ("text/plain", "unknown"),
        ],
    )
    def test_categories(self, mime, category):
        assert file_category(mime) == category


class TestValidateFiles:
    def test_accepts_supported_files(self):
        validate_files([PNG, UploadedFile("doc.pdf", "application/pdf", b"%PDF")])

    def test_too_many_files(self):
        with pytest.raises(AttachmentError, match="Too many files"):
            validate_files([PNG] * (MAX_FILES_PER_MESSAGE + 1))

    def test_unsupported_type(self):
        with pytest.raises(AttachmentError) as exc_info:
            validate_files([UploadedFile("notes.txt", "text/plain", b"hi")])
        assert exc_info.value.status == 422
        assert exc_info.value.details["file"] == "notes.txt"

    def test_size_limit_per_category(self):
        big_image = UploadedFile("big.png", "image/png", b"\0" * (10 * 1024 * 1024 + 1))
        with pytest.raises(AttachmentError, match="too large"):
            validate_files([big_image])


class TestEncode:
    def test_image_is_data_uri(self):
        block = encode(PNG)
        assert isinstance(block, ImageBlock)
        assert block.image_url.url == "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode()

    def test_document_keeps_filename(self):
        block = encode(UploadedFile("doc.pdf", "application/pdf", b"%PDF"))
        assert isinstance(block, FileBlock)
        assert block.file.filename == "doc.pdf"
        assert block.file.file_data.startswith("data:application/pdf;base64,")

    def test_audio_is_raw_base64_with_format(self):
        block = encode(UploadedFile("a.mp3", "audio/mpeg", b"ID3"))
        assert isinstance(block, AudioBlock)
        assert block.input_audio.data == base64.b64encode(b"ID3").decode()
        assert block.input_audio.format == "mp3"

    def test_video(self):
        assert isinstance(encode(UploadedFile("v.mp4", "video/mp4", b"\0")), VideoBlock)


class TestBuildContent:
    def test_text_first_then_blocks_in_order(self):
        blocks = [encode(PNG), encode(UploadedFile("doc.pdf", "application/pdf", b"%PDF"))]
        content = build_content("  look at these ", blocks)
        assert isinstance(content[0], TextBlock)
        assert content[0].text == "look at these"
        assert isinstance(content[1], ImageBlock)
        assert isinstance(content[2], FileBlock)

    def test_no_blocks_stays_string(self):
        assert build_content("plain", []) == "plain"

    def test_empty_text_omitted(self):
        content = build_content("", [encode(PNG)])
        assert len(content) == 1
        assert isinstance(content[0], ImageBlock)


def test_asset_filename_sanitizes():
    name = asset_filename("my photo (1).png", "msg-abc", 0, 1700000000000)
    assert name == "1700000000000_0_msg-abc_my_photo__1_.png"


def test_preview_only_for_images():
    assert preview_data_uri("image/png", b"x").startswith("data:image/png;base64,")
    assert preview_data_uri("application/pdf", b"x") is None


class TestCompressImage:
    def test_small_image_unchanged(self):
        assert compress_image(PNG) is PNG

    def test_non_image_unchanged(self):
        pdf = UploadedFile("doc.pdf", "application/pdf", b"%PDF" * (1024 * 1024))
        assert compress_image(pdf) is pdf

    def test_oversize_png_becomes_jpeg(self):
        original = UploadedFile("noise.png", "image/png", noisy_png(1200, 1200))
        assert original.size > COMPRESSION_TARGET_BYTES

        compressed = compress_image(original)

        assert compressed.mime_type == "image/jpeg"
        assert compressed.name == "noise.jpg"
        assert compressed.size < original.size
        assert Image.open(io.BytesIO(compressed.data)).format == "JPEG"

    def test_long_side_capped(self):
        original = UploadedFile("wide.webp.png", "image/png", noisy_png(4200, 300))
        assert original.size > COMPRESSION_TARGET_BYTES

        compressed = compress_image(original)

        width, height = Image.open(io.BytesIO(compressed.data)).size
        assert width == MAX_IMAGE_DIMENSION
        assert height < 300
        assert compressed.name == "wide.webp.jpg"

    def test_jpeg_keeps_name(self):
        original = UploadedFile("photo.jpeg", "image/jpeg", noisy_png(1200, 1200))

        assert compress_image(original).name == "photo.jpeg"

    def test_unreadable_image_rejected(self):
        garbage = UploadedFile("broken.png", "image/png", b"\0" * (COMPRESSION_TARGET_BYTES + 1))
        with pytest.raises(AttachmentError, match="could not be read"):
            compress_image(garbage)

    def test_encode_sends_compressed_bytes(self):
        block = encode(UploadedFile("noise.png", "image/png", noisy_png(1200, 1200)))
        assert block.image_url.url.startswith("data:image/jpeg;base64,")
