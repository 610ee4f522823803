# =====================================================================
# LB Collector Event Sender Tests
# =====================================================================
# Tests for scripts/lb_event_sender.py
# Run with: pytest tests/test_lb_event_sender.py -v
# =====================================================================

import json
import os
import sys
from unittest.mock import MagicMock

import pytest

# Add scripts directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "scripts"))

import lb_event_sender  # noqa: E402
from services.log_entry import decode_log_entry, get_base_host  # noqa: E402


pytestmark = pytest.mark.unit


class TestBuildLogEntry:
    """Test synthesized entries decode the way the collector expects"""

    def test_entry_decodes(self):
        entry = lb_event_sender.build_log_entry("https://shop.example.com/cart", 503)

        decoded = decode_log_entry(json.dumps(entry).encode())

        assert decoded.http_request.status == 503
        assert get_base_host(decoded.http_request.request_url) == "shop.example.com"

    def test_synthesize_cycles_urls_and_statuses(self):
        entries = lb_event_sender.synthesize_entries(
            4, ["http://a.example/", "http://b.example/"], [200, 404, 500]
        )

        pairs = [(e["httpRequest"]["requestUrl"], e["httpRequest"]["status"]) for e in entries]
        assert pairs == [
            ("http://a.example/", 200),
            ("http://b.example/", 404),
            ("http://a.example/", 500),
            ("http://b.example/", 200),
        ]


class TestPublishEntries:
    """Test publishing and pacing"""

    def test_publishes_to_topic(self):
        publisher = MagicMock()

        sent = lb_event_sender.publish_entries(
            [{"httpRequest": {"status": 200}}], "p", "loadbalancer-logs", rate=1000, publisher=publisher
        )

        assert sent == 1
        topic, data = publisher.publish.call_args[0]
        assert topic == "projects/p/topics/loadbalancer-logs"
        assert json.loads(data) == {"httpRequest": {"status": 200}}
        publisher.publish.return_value.result.assert_called_once()

    def test_publish_failure_is_skipped(self, capsys):
        publisher = MagicMock()
        publisher.publish.return_value.result.side_effect = [RuntimeError("denied"), "id-2"]

        sent = lb_event_sender.publish_entries([{}, {}], "p", "t", rate=1000, publisher=publisher)

        assert sent == 1
        assert "Publish failed: denied" in capsys.readouterr().out

    def test_dry_run_prints(self, capsys):
        sent = lb_event_sender.publish_entries([{"log": "x"}], "p", "t", rate=1000, dry_run=True)

        assert sent == 1
        assert "[DRY-RUN] projects/p/topics/t" in capsys.readouterr().out


class TestMain:
    """Test command line handling"""

    def test_replay_requires_file(self):
        with pytest.raises(SystemExit):
            lb_event_sender.get_args(["replay", "--project", "p"])

    def test_replay_missing_file(self, tmp_path, capsys):
        rc = lb_event_sender.main(["replay", str(tmp_path / "nope.json"), "--project", "p", "--dry-run"])

        assert rc == 1
        assert "File not found" in capsys.readouterr().out

    def test_replay_rejects_non_array(self, tmp_path):
        path = tmp_path / "entries.json"
        path.write_text('{"httpRequest": {}}')

        assert lb_event_sender.main(["replay", str(path), "--project", "p", "--dry-run"]) == 1

    def test_synth_dry_run(self, capsys):
        rc = lb_event_sender.main([
            "synth", "--project", "p", "--count", "2", "--rate", "1000", "--dry-run",
            "--url", "http://example.com/path", "--status", "200",
        ])

        assert rc == 0
        out = capsys.readouterr().out
        assert out.count("[DRY-RUN]") == 2
        assert "Done. Sent 2 entries." in out
