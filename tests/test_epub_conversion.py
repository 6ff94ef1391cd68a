import shutil
import subprocess
from pathlib import Path

import pytest

from nl2kindle.email.epub import converter as conv_mod
from nl2kindle.email.epub import (
    EpubConversionError,
    EpubOptions,
    generate_epub_file,
    write_generated_file,
)
from nl2kindle.extraction import ConversionMetadata
from nl2kindle.file_operations import sanitize_file_name

ebook_convert_path = shutil.which("ebook-convert")

METADATA = ConversionMetadata(
    title="Test: Article & More!",
    author="Test Author",
    date="2024-05-01",
    source="Example Weekly",
    word_count=12,
    reading_time=1,
)
CONTENT = "<h2>Heading</h2><p>Some content with <strong>bold</strong> text.</p>"


@pytest.fixture
def work_dirs(monkeypatch, tmp_path):
    """Route mkdtemp into tmp_path so cleanup can be asserted."""
    created = []
    original = conv_mod.tempfile.mkdtemp

    def fake_mkdtemp(prefix=None):
        path = original(prefix=prefix, dir=tmp_path)
        created.append(Path(path))
        return path

    monkeypatch.setattr(conv_mod.tempfile, "mkdtemp", fake_mkdtemp)
    return created


@pytest.fixture
def fake_ebook_convert(monkeypatch):
    monkeypatch.setattr(
        conv_mod, "_EBOOK_CONVERT_CACHE", {"checked": True, "available": True, "path": "/usr/bin/ebook-convert"}
    )
    calls = []

    def install(returncode=0, stderr="", write_output=True, raises=None):
        def fake_run(cmd, **kwargs):
            calls.append((cmd, kwargs))
            if raises is not None:
                raise raises
            if write_output and returncode == 0:
                Path(cmd[2]).write_bytes(b"PK\x03\x04fake-epub")
            return subprocess.CompletedProcess(cmd, returncode, stdout="", stderr=stderr)

        monkeypatch.setattr(conv_mod.subprocess, "run", fake_run)
        return calls

    return install


def test_command_is_argv_list_with_timeout(fake_ebook_convert, work_dirs):
    calls = fake_ebook_convert()
    result = generate_epub_file(CONTENT, METADATA, EpubOptions(timeout=45))

    cmd, kwargs = calls[0]
    assert isinstance(cmd, list)
    assert cmd[0] == "/usr/bin/ebook-convert"
    assert cmd[cmd.index("--title") + 1] == "Test: Article & More!"
    assert cmd[cmd.index("--authors") + 1] == "Test Author"
    assert "--no-default-epub-cover" in cmd
    assert kwargs["timeout"] == 45
    assert kwargs.get("shell", False) is False

    assert result.is_epub
    assert result.content == b"PK\x03\x04fake-epub"
    assert result.size == len(result.content)
    assert result.filename.startswith("Test_Article_More_")
    assert result.filename.endswith(".epub")


def test_input_document_carries_metadata(fake_ebook_convert, work_dirs, monkeypatch):
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["document"] = Path(cmd[1]).read_text(encoding="utf-8")
        Path(cmd[2]).write_bytes(b"epub")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    fake_ebook_convert()
    monkeypatch.setattr(conv_mod.subprocess, "run", fake_run)
    generate_epub_file(CONTENT, METADATA)
    assert "<title>Test: Article &amp; More!</title>" in seen["document"]
    assert '<meta name="author" content="Test Author">' in seen["document"]
    assert "<strong>bold</strong>" in seen["document"]


def test_temp_dir_removed_on_success(fake_ebook_convert, work_dirs):
    fake_ebook_convert()
    generate_epub_file(CONTENT, METADATA)
    assert work_dirs and not work_dirs[0].exists()


def test_non_zero_exit_raises_with_stderr(fake_ebook_convert, work_dirs):
    fake_ebook_convert(returncode=1, stderr="Traceback...\nValueError: bad input")
    with pytest.raises(EpubConversionError) as exc_info:
        generate_epub_file(CONTENT, METADATA)
    assert "exit code 1" in str(exc_info.value)
    assert "bad input" in exc_info.value.stderr
    assert not work_dirs[0].exists()


def test_timeout_raises(fake_ebook_convert, work_dirs):
    fake_ebook_convert(raises=subprocess.TimeoutExpired(cmd="ebook-convert", timeout=1))
    with pytest.raises(EpubConversionError, match="timed out"):
        generate_epub_file(CONTENT, METADATA, EpubOptions(timeout=1))
    assert not work_dirs[0].exists()


def test_missing_output_raises(fake_ebook_convert, work_dirs):
    fake_ebook_convert(write_output=False)
    with pytest.raises(EpubConversionError, match="output file"):
        generate_epub_file(CONTENT, METADATA)


def test_html_fallback_when_ebook_convert_missing(monkeypatch, work_dirs):
    monkeypatch.setattr(conv_mod, "_EBOOK_CONVERT_CACHE", {"checked": True, "available": False, "path": None})
    result = generate_epub_file(CONTENT, METADATA)
    assert not result.is_epub
    assert result.media_type == "text/html"
    assert result.filename.endswith(".html")
    assert b"<strong>bold</strong>" in result.content
    assert not work_dirs[0].exists()


def test_write_generated_file(tmp_path, monkeypatch):
    monkeypatch.setattr(conv_mod, "_EBOOK_CONVERT_CACHE", {"checked": True, "available": False, "path": None})
    result = generate_epub_file(CONTENT, METADATA)
    path = write_generated_file(result, tmp_path / "out")
    assert path.read_bytes() == result.content


@pytest.mark.parametrize(
    "title, expected",
    [
        ("Test: Article & More!", "Test_Article_More"),
        ("", ""),
        ("Simple Title", "Simple_Title"),
        ("A" * 80, "A" * 50),
    ],
)
def test_sanitize_file_name(title, expected):
    assert sanitize_file_name(title) == expected


@pytest.mark.skipif(ebook_convert_path is None, reason="ebook-convert not installed")
def test_real_conversion_produces_epub(monkeypatch):
    monkeypatch.setattr(conv_mod, "_EBOOK_CONVERT_CACHE", {"checked": False, "available": False, "path": None})
    result = generate_epub_file(CONTENT * 20, METADATA)
    assert result.is_epub
    assert result.content[:2] == b"PK"
    assert result.size > 1024
