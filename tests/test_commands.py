"""
Tests for the management commands.
"""

import json
from io import StringIO
from unittest.mock import Mock, patch

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError

from eventsync.models import Event, Source, SourceBinding


@pytest.fixture
def sources_file(tmp_path):
    data = {
        "sources": [
            {
                "name": "Official Site",
                "strategy": "html",
                "priority": 10,
                "strategy_config": {"version": 1, "extract": {"race_date": {"selector": ".race-date"}}},
            },
            {"name": "Race Platform API", "strategy": "api", "priority": 5},
        ],
        "bindings": [
            {
                "event": "Shanghai Marathon",
                "source": "Official Site",
                "url": "https://www.shmarathon.com/race",
                "is_primary": True,
            }
        ],
    }
    path = tmp_path / "sources.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.mark.django_db
class TestImportSources:
    def test_import_creates_sources_and_bindings(self, sources_file):
        out = StringIO()

        call_command("import_sources", str(sources_file), stdout=out)

        assert Source.objects.count() == 2
        binding = SourceBinding.objects.get(source__name="Official Site")
        assert binding.event.name == "Shanghai Marathon"
        assert binding.is_primary
        assert "Sources created: 2" in out.getvalue()

    def test_second_import_updates(self, sources_file):
        call_command("import_sources", str(sources_file), stdout=StringIO())
        out = StringIO()

        call_command("import_sources", str(sources_file), stdout=out)

        assert Source.objects.count() == 2
        assert Event.objects.count() == 1
        assert "Sources updated: 2" in out.getvalue()
        assert "Bindings updated: 1" in out.getvalue()

    def test_dry_run_saves_nothing(self, sources_file):
        out = StringIO()

        call_command("import_sources", str(sources_file), "--dry-run", stdout=out)

        assert not Source.objects.exists()
        assert not Event.objects.exists()
        assert "Would create source: Official Site" in out.getvalue()

    def test_invalid_source_rolls_back(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(
            json.dumps(
                {
                    "sources": [
                        {"name": "Good", "strategy": "html"},
                        {"name": "Bad", "strategy": "html", "strategy_config": {"version": 99}},
                    ]
                }
            ),
            encoding="utf-8",
        )

        with pytest.raises(CommandError):
            call_command("import_sources", str(path), stdout=StringIO())

        assert not Source.objects.exists()

    def test_unreadable_files(self, tmp_path):
        not_json = tmp_path / "broken.json"
        not_json.write_text("{not json", encoding="utf-8")
        a_list = tmp_path / "list.json"
        a_list.write_text("[]", encoding="utf-8")

        for path in (tmp_path / "missing.json", not_json, a_list):
            with pytest.raises(CommandError):
                call_command("import_sources", str(path), stdout=StringIO())


@pytest.mark.django_db
class TestSyncNow:
    def test_nothing_to_sync(self):
        out = StringIO()

        call_command("sync_now", stdout=out)

        assert "No bindings to sync." in out.getvalue()

    def test_local_sync_of_one_binding(self, html_binding):
        runner = Mock(return_value={"status": "success", "binding_id": str(html_binding.id)})
        out = StringIO()

        with patch("eventsync.services.dispatcher.run_binding_sync", runner), patch(
            "eventsync.services.dispatcher.connection"
        ):
            call_command("sync_now", "--local", "--binding", str(html_binding.id), stdout=out)

        runner.assert_called_once_with(str(html_binding.id))
        assert "Done: 1 succeeded, 0 failed, 0 skipped" in out.getvalue()

    def test_celery_mode_queues(self, html_binding, api_binding):
        out = StringIO()

        with patch("eventsync.tasks.sync_binding") as mock_task:
            mock_task.apply_async.return_value = Mock(id="task")
            call_command("sync_now", "--all", stdout=out)

        assert mock_task.apply_async.call_count == 2
        assert "Queued 2 sync task(s)" in out.getvalue()

    def test_invalid_worker_count(self, html_binding):
        with pytest.raises(CommandError):
            call_command("sync_now", "--local", "--workers", "-1", stdout=StringIO())
