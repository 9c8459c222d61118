"""Tests for the crawl CLI."""

import csv
import json

import httpx
import pytest
from typer.testing import CliRunner

from conftest import FakePage, ok_envelope
from pagecrawl.cli.crawl_cli import EXIT_ABORTED, EXIT_INVALID, app, write_records

runner = CliRunner()

SERVER = "http://crawler.test"


def _result(status: str = "completed", records=None, **extra) -> dict:
    body = {
        "run_id": "run-1",
        "status": status,
        "abort_reason": None,
        "records": records if records is not None else [{"url": "https://example.com/", "title": "x"}],
        "statistics": {"pages_visited": 1, "pages_failed": 0, "retries": 0},
        "errors": [],
        "log": [],
    }
    body.update(extra)
    return body


@pytest.fixture
def config_file(tmp_path, crawl_payload):
    path = tmp_path / "crawl.json"
    path.write_text(json.dumps(crawl_payload), encoding="utf-8")
    return path


class TestWriteRecords:
    """Test record export."""

    def test_json(self, tmp_path):
        path = tmp_path / "out.json"
        write_records([{"url": "u", "title": "ü"}], path, "json")
        assert json.loads(path.read_text(encoding="utf-8")) == [{"url": "u", "title": "ü"}]

    def test_csv_uses_union_of_columns(self, tmp_path):
        path = tmp_path / "out.csv"
        write_records([{"url": "a", "title": "A"}, {"url": "b", "price": 3}], path, "csv")

        with path.open(newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))

        assert list(rows[0].keys()) == ["url", "title", "price"]
        assert rows[1] == {"url": "b", "title": "", "price": "3"}

    def test_empty_csv(self, tmp_path):
        path = tmp_path / "out.csv"
        write_records([], path, "csv")
        assert path.read_text(encoding="utf-8").strip() == ""


class TestSubmitCommand:
    """Test ``pagecrawl submit`` against a mocked server."""

    def test_completed_run_prints_records(self, respx_mock, config_file):
        route = respx_mock.post(f"{SERVER}/start-crawl").mock(
            return_value=httpx.Response(200, json=_result())
        )

        result = runner.invoke(app, ["submit", str(config_file), "--server", SERVER])

        assert result.exit_code == 0
        assert "Run run-1: completed" in result.output
        assert '"title": "x"' in result.output
        sent = json.loads(route.calls.last.request.content)
        assert sent["startUrls"] == ["https://example.com/"]

    def test_run_id_sent_as_correlation_header(self, respx_mock, config_file):
        route = respx_mock.post(f"{SERVER}/start-crawl").mock(
            return_value=httpx.Response(200, json=_result())
        )

        runner.invoke(app, ["submit", str(config_file), "--server", SERVER, "--run-id", "my-run"])

        assert route.calls.last.request.headers["X-Correlation-ID"] == "my-run"

    def test_writes_output_file(self, respx_mock, config_file, tmp_path):
        respx_mock.post(f"{SERVER}/start-crawl").mock(
            return_value=httpx.Response(200, json=_result())
        )
        output = tmp_path / "records.csv"

        result = runner.invoke(
            app, ["submit", str(config_file), "--server", SERVER, "-o", str(output), "-f", "csv"]
        )

        assert result.exit_code == 0
        assert output.read_text(encoding="utf-8").splitlines()[0] == "url,title"

    def test_invalid_configuration(self, respx_mock, config_file):
        body = {
            "error": "invalid_configuration",
            "fields": [{"field": "startUrls", "message": "must not be empty"}],
        }
        respx_mock.post(f"{SERVER}/start-crawl").mock(return_value=httpx.Response(400, json=body))

        result = runner.invoke(app, ["submit", str(config_file), "--server", SERVER])

        assert result.exit_code == EXIT_INVALID
        assert "startUrls: must not be empty" in result.output

    def test_aborted_run(self, respx_mock, config_file):
        respx_mock.post(f"{SERVER}/start-crawl").mock(
            return_value=httpx.Response(
                503, json=_result(status="aborted", abort_reason="Aborted by operator")
            )
        )

        result = runner.invoke(app, ["submit", str(config_file), "--server", SERVER])

        assert result.exit_code == EXIT_ABORTED
        assert "Reason: Aborted by operator" in result.output

    def test_rate_limited(self, respx_mock, config_file):
        respx_mock.post(f"{SERVER}/start-crawl").mock(
            return_value=httpx.Response(429, json={"error": "rate_limited", "retry_after": 30})
        )

        result = runner.invoke(app, ["submit", str(config_file), "--server", SERVER])

        assert result.exit_code == EXIT_ABORTED

    def test_server_shutting_down(self, respx_mock, config_file):
        respx_mock.post(f"{SERVER}/start-crawl").mock(
            return_value=httpx.Response(503, json={"error": "shutting_down"})
        )

        result = runner.invoke(app, ["submit", str(config_file), "--server", SERVER])

        assert result.exit_code == EXIT_ABORTED
        assert "Server error (HTTP 503): shutting_down" in result.output
        assert "Run None" not in result.output

    def test_server_returns_non_json(self, respx_mock, config_file):
        respx_mock.post(f"{SERVER}/start-crawl").mock(
            return_value=httpx.Response(503, text="upstream unavailable")
        )

        result = runner.invoke(app, ["submit", str(config_file), "--server", SERVER])

        assert result.exit_code == EXIT_ABORTED
        assert "upstream unavailable" in result.output

    def test_server_unreachable(self, respx_mock, config_file):
        respx_mock.post(f"{SERVER}/start-crawl").mock(side_effect=httpx.ConnectError("refused"))

        result = runner.invoke(app, ["submit", str(config_file), "--server", SERVER])

        assert result.exit_code == EXIT_ABORTED
        assert "Could not reach" in result.output


class TestConfigLoading:
    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["submit", str(tmp_path / "nope.json")])
        assert result.exit_code == EXIT_INVALID

    def test_not_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        result = runner.invoke(app, ["submit", str(path)])
        assert result.exit_code == EXIT_INVALID
        assert "not valid JSON" in result.output

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[]", encoding="utf-8")
        result = runner.invoke(app, ["run", str(path)])
        assert result.exit_code == EXIT_INVALID

    def test_unknown_format(self, config_file):
        result = runner.invoke(app, ["submit", str(config_file), "-f", "xml"])
        assert result.exit_code != 0


class TestRunCommand:
    """Test ``pagecrawl run`` with the browser replaced by the fake driver."""

    def test_local_crawl(self, config_file, fake_driver, mock_settings, monkeypatch):
        fake_driver.pages["https://example.com/"] = FakePage(envelope=ok_envelope({"title": "Home"}))
        monkeypatch.setattr("pagecrawl.cli.crawl_cli.PlaywrightDriver", lambda: fake_driver)
        monkeypatch.setattr("pagecrawl.cli.crawl_cli.get_settings", lambda: mock_settings)

        result = runner.invoke(app, ["run", str(config_file)])

        assert result.exit_code == 0
        assert '"title": "Home"' in result.output
        assert fake_driver.closed is True

    def test_invalid_config_exits_2(self, tmp_path, fake_driver, mock_settings, monkeypatch):
        monkeypatch.setattr("pagecrawl.cli.crawl_cli.PlaywrightDriver", lambda: fake_driver)
        monkeypatch.setattr("pagecrawl.cli.crawl_cli.get_settings", lambda: mock_settings)
        path = tmp_path / "crawl.json"
        path.write_text(json.dumps({"startUrls": ["nope"], "pageFunction": "return {};"}), encoding="utf-8")

        result = runner.invoke(app, ["run", str(path)])

        assert result.exit_code == EXIT_INVALID
        assert "startUrls.0" in result.output
