"""Tests for the ics-scraper command line."""

import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from ics_scraper import __main__ as cli
from ics_scraper import orchestrator
from ics_scraper.config_models import ScraperConfig
from ics_scraper.domain.models import ProgressEvent
from tests.fixtures.fakes import FakeLLMClient, llm_events

pytestmark = pytest.mark.unit

BOARD_MEETING_PAGE = """<html><head>
<script type="application/ld+json">
{"@type": "Event", "name": "Board Meeting", "startDate": "2025-03-15T18:00", "location": "City Hall"}
</script></head><body><p>Hi</p></body></html>"""


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Run from an empty directory so no stray .env is picked up."""
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def fake_llm(monkeypatch: pytest.MonkeyPatch) -> FakeLLMClient:
    """Route the CLI's pipeline calls through a scripted LLM client."""
    client = FakeLLMClient([])

    async def run_with_fake(config: ScraperConfig, **kwargs: Any):
        return await orchestrator.run_pipeline(config, llm_client=client, **kwargs)

    async def stream_with_fake(config: ScraperConfig, **kwargs: Any) -> AsyncIterator[ProgressEvent]:
        async for item in orchestrator.stream_pipeline(config, llm_client=client, **kwargs):
            yield item

    monkeypatch.setattr(cli, "run_pipeline", run_with_fake)
    monkeypatch.setattr(cli, "stream_pipeline", stream_with_fake)
    return client


def write_page(tmp_path: Path, html: str) -> Path:
    path = tmp_path / "page.html"
    path.write_text(html, encoding="utf-8")
    return path


class TestMain:
    """Test main() exit codes and output."""

    def test_main_when_structured_page_then_ics_on_stdout(
        self, tmp_path: Path, fake_llm: FakeLLMClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """A JSON-LD page is converted without calling the LLM."""
        page = write_page(tmp_path, BOARD_MEETING_PAGE)

        assert cli.main(["--input", str(page)]) == cli.EXIT_OK

        out = capsys.readouterr().out
        assert out.startswith("BEGIN:VCALENDAR")
        assert "SUMMARY:Board Meeting" in out
        assert fake_llm.calls == []

    def test_main_when_json_format_then_file_written(
        self, tmp_path: Path, fake_llm: FakeLLMClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """--format json -o writes events and metadata to the file."""
        page = write_page(tmp_path, BOARD_MEETING_PAGE)
        output = tmp_path / "events.json"

        code = cli.main(["--input", str(page), "--format", "json", "-o", str(output), "--calendar-name", "Council"])

        assert code == cli.EXIT_OK
        data = json.loads(output.read_text(encoding="utf-8"))
        assert [e["title"] for e in data["events"]] == ["Board Meeting"]
        assert data["metadata"]["structured_events"] == 1
        assert "X-WR-CALNAME:Council" in data["ics_content"]
        assert "Wrote 1 events" in capsys.readouterr().err

    def test_main_when_llm_page_then_events_extracted(
        self, tmp_path: Path, fake_llm: FakeLLMClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Plain pages go through the LLM."""
        fake_llm._responses.append(
            llm_events([{"title": "Gala", "startDateTime": "2025-06-10T19:00:00", "timezone": "America/New_York"}])
        )
        page = write_page(tmp_path, "<div>Gala tonight!</div>")

        assert cli.main(["--input", str(page), "--no-alarms"]) == cli.EXIT_OK

        out = capsys.readouterr().out
        assert "SUMMARY:Gala" in out
        assert "BEGIN:VALARM" not in out
        assert len(fake_llm.calls) == 1

    def test_main_when_stream_then_progress_on_stderr(
        self, tmp_path: Path, fake_llm: FakeLLMClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """--stream prints stage status and events to stderr."""
        page = write_page(tmp_path, BOARD_MEETING_PAGE)

        assert cli.main(["--input", str(page), "--stream"]) == cli.EXIT_OK

        captured = capsys.readouterr()
        assert "[Fetch]" in captured.err
        assert "+ Board Meeting (2025-03-15 18:00)" in captured.err
        assert "SUMMARY:Board Meeting" in captured.out

    def test_main_when_no_source_then_bad_input(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Missing URL and input is a configuration error."""
        assert cli.main([]) == cli.EXIT_BAD_INPUT
        assert "CONFIGURATION_ERROR" in capsys.readouterr().err

    def test_main_when_input_missing_then_usage_error(self, tmp_path: Path) -> None:
        """A nonexistent --input file is rejected by the parser."""
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--input", str(tmp_path / "missing.html")])
        assert exc_info.value.code == 2

    def test_main_when_page_empty_then_scrape_failed(
        self, tmp_path: Path, fake_llm: FakeLLMClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """A page without text fails the scrape."""
        page = write_page(tmp_path, "<html><body> </body></html>")

        assert cli.main(["--input", str(page)]) == cli.EXIT_SCRAPE_FAILED
        assert "INVALID_HTML" in capsys.readouterr().err

    def test_main_when_stream_fails_then_scrape_failed(
        self, tmp_path: Path, fake_llm: FakeLLMClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Streaming errors map to the same exit code."""
        page = write_page(tmp_path, "<html><body> </body></html>")

        assert cli.main(["--input", str(page), "--stream"]) == cli.EXIT_SCRAPE_FAILED
        assert "INVALID_HTML" in capsys.readouterr().err


def test_overrides_from_args_only_sets_given_options() -> None:
    """Unset options leave the environment configuration alone."""
    args = cli._create_parser().parse_args(["https://example.org", "--timezone", "Europe/Paris", "--invite"])
    overrides = cli._overrides_from_args(args)
    assert overrides == {
        "source": {"url": "https://example.org"},
        "processing": {"timezone": {"default": "Europe/Paris"}},
        "ics": {"timezone": "Europe/Paris", "method": "REQUEST"},
    }
