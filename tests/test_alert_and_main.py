"""
Tests for desktop alerts and the stager entry point.
"""

from unittest.mock import AsyncMock, patch

import pytest

from devenv import main as stager_main
from devenv.errors import CommandError
from devenv.services.alert import AlertNotifier, _notification_command


@pytest.mark.unit
class TestAlertNotifier:

    @pytest.mark.asyncio
    async def test_disabled_sends_nothing(self):
        notifier = AlertNotifier(enabled=False)
        assert notifier.alert("hello") is None
        await notifier.aclose()

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self):
        notifier = AlertNotifier(enabled=True)
        with patch("devenv.services.alert._notification_command", return_value=["notify-send", "x"]), \
                patch("devenv.services.alert.run_async", AsyncMock(side_effect=CommandError("no daemon"))) as run:
            task = notifier.alert("Failed to provision developer environment")
            await notifier.aclose()

        assert task.done() and task.exception() is None
        run.assert_awaited_once()

    def test_applescript_message_is_escaped(self):
        with patch("devenv.services.alert.sys.platform", "darwin"), \
                patch("devenv.services.alert.shutil.which", return_value="/usr/bin/osascript"):
            cmd = _notification_command('Restore "b1" failed: C:\\tmp')

        assert cmd[:2] == ["osascript", "-e"]
        assert cmd[2].startswith('display notification "Restore \\"b1\\" failed: C:\\\\tmp" with title')


@pytest.mark.unit
class TestStagerEntryPoint:

    def test_missing_config_exits(self, monkeypatch):
        monkeypatch.delenv("CONFIG", raising=False)
        with pytest.raises(SystemExit) as exc_info:
            stager_main.main()
        assert exc_info.value.code == 1

    def test_malformed_config_exits(self, monkeypatch):
        monkeypatch.setenv("CONFIG", "{not json")
        with pytest.raises(SystemExit) as exc_info:
            stager_main.main()
        assert exc_info.value.code == 1

    def test_runs_stager_with_parsed_config(self, monkeypatch):
        monkeypatch.setenv("CONFIG", '{"source": {"snapshotTarget": "default"}, "dest": {"bucket": "velero-restore"}}')
        with patch.object(stager_main, "run_stager", AsyncMock()) as run:
            stager_main.main()

        config = run.await_args.args[0]
        assert config.source.snapshot_target == "default"
        assert config.dest.bucket == "velero-restore"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
