"""Tests for the anka process layer, using shell scripts in place of anka."""

import io
import subprocess
from unittest import mock

import pytest

from ankabuild.exceptions import ProtocolError, ToolError, TransportError, VMNotFoundError
from ankabuild.runner import DISCONNECTED_EXIT_CODE, CommandRunner, GuestRunner, RunParams, tool_environment

OK_UUID = """printf '%s' '{"status": "OK", "body": {"uuid": "abc-123"}, "message": ""}'"""


def logged_args(tmp_path):
    return (tmp_path / "args.log").read_text().splitlines()


class TestToolEnvironment:
    def test_only_anka_and_path_forwarded(self, monkeypatch):
        """Only ANKA_* and PATH* variables reach the subprocess."""
        monkeypatch.setenv("ANKA_LOG_LEVEL", "debug")
        monkeypatch.setenv("PATH", "/usr/bin:/bin")
        monkeypatch.setenv("SECRET_TOKEN", "hunter2")

        env = tool_environment()

        assert env["ANKA_LOG_LEVEL"] == "debug"
        assert env["PATH"] == "/usr/bin:/bin"
        assert "SECRET_TOKEN" not in env


class TestCommandRunner:
    """Tests for buffered and streamed subcommands."""

    def test_run_parses_envelope(self, fake_anka, tmp_path):
        """Buffered run skips progress and returns the terminal envelope."""
        runner = CommandRunner(fake_anka(f"echo 'Creating...'\n{OK_UUID}"))

        envelope = runner.run("show", "foo")

        assert envelope.ok
        assert envelope.body == {"uuid": "abc-123"}
        assert logged_args(tmp_path) == ["--machine-readable show foo"]

    def test_run_raises_classified_tool_error(self, fake_anka):
        runner = CommandRunner(
            fake_anka("""printf '%s' '{"status": "ERROR", "code": 3, "message": "vm foo not found"}'""")
        )

        with pytest.raises(VMNotFoundError, match="vm foo not found"):
            runner.run("show", "foo")

    def test_run_generic_tool_error(self, fake_anka):
        runner = CommandRunner(
            fake_anka("""printf '%s' '{"status": "ERROR", "code": 42, "message": "boom"}'; exit 1""")
        )

        with pytest.raises(ToolError) as exc_info:
            runner.run("modify", "foo")

        assert type(exc_info.value) is ToolError
        assert exc_info.value.code == 42

    def test_run_without_envelope_and_failure_exit(self, fake_anka):
        """A crashed tool with no envelope is a transport error."""
        runner = CommandRunner(fake_anka("echo 'segfault'\nexit 2"))

        with pytest.raises(TransportError, match="exited with 2"):
            runner.run("show", "foo")

    def test_run_invalid_envelope_with_success_exit(self, fake_anka):
        runner = CommandRunner(fake_anka("printf '%s' 'not json'"))

        with pytest.raises(ProtocolError):
            runner.run("show", "foo")

    def test_run_missing_binary(self, tmp_path):
        runner = CommandRunner(str(tmp_path / "missing-anka"))

        with pytest.raises(TransportError, match="Failed to execute"):
            runner.run("version")

    @mock.patch("subprocess.run")
    def test_run_logs_full_command(self, mock_run, caplog):
        """The composed command line is logged before execution."""
        mock_run.return_value = mock.Mock(returncode=0, stdout=b'{"status": "OK"}')

        with caplog.at_level("INFO", logger="ankabuild.runner"):
            CommandRunner("anka").run("registry", "--cert", "/etc/anka/node.pem", "list")

        assert "anka --machine-readable registry --cert /etc/anka/node.pem list" in caplog.text
        assert mock_run.call_args[0][0][:2] == ["anka", "--machine-readable"]

    def test_run_streamed_forwards_progress(self, fake_anka, tmp_path):
        """Every stdout and stderr line reaches the progress sink; the envelope is returned."""
        runner = CommandRunner(
            fake_anka(f"echo 'step 1'\necho 'warning' >&2\necho 'step 2'\n{OK_UUID}")
        )
        progress = []

        envelope = runner.run_streamed("create", "foo", progress=progress.append)

        assert envelope.body["uuid"] == "abc-123"
        assert set(progress) == {"step 1", "step 2", "warning"}
        assert progress.index("step 1") < progress.index("step 2")
        assert logged_args(tmp_path) == ["--machine-readable --debug create foo"]

    def test_run_streamed_missing_envelope(self, fake_anka):
        runner = CommandRunner(fake_anka("echo 'only progress'"))

        with pytest.raises(TransportError, match="missing machine readable output"):
            runner.run_streamed("create", "foo", progress=lambda line: None)

    def test_run_streamed_many_lines(self, fake_anka):
        """More lines than the queue holds are drained without blocking."""
        runner = CommandRunner(fake_anka(f"i=0\nwhile [ $i -lt 1000 ]; do echo \"line $i\"; i=$((i+1)); done\n{OK_UUID}"))
        progress = []

        runner.run_streamed("create", "foo", progress=progress.append)

        assert len(progress) == 1000
        assert progress[-1] == "line 999"

    def test_run_streamed_failing_sink_reaps_process(self, fake_anka):
        """A raising sink kills anka and joins the readers before propagating."""
        runner = CommandRunner(fake_anka(f"i=0\nwhile [ $i -lt 5000 ]; do echo \"line $i\"; i=$((i+1)); done\n{OK_UUID}"))
        spawned = []
        real_popen = subprocess.Popen

        def spawn(*args, **kwargs):
            proc = real_popen(*args, **kwargs)
            spawned.append(proc)
            return proc

        def failing_sink(line):
            raise RuntimeError("ui closed")

        with mock.patch("ankabuild.runner.subprocess.Popen", side_effect=spawn):
            with pytest.raises(RuntimeError, match="ui closed"):
                runner.run_streamed("create", "foo", progress=failing_sink)

        assert len(spawned) == 1
        assert spawned[0].poll() is not None


class TestGuestRunner:
    """Tests for anka run relaying."""

    def test_command_flags(self):
        runner = GuestRunner(
            RunParams(
                vm_name="foo",
                command=["true"],
                volume="/tmp/share",
                user="admin",
                wait_network=True,
                wait_time=True,
                debug=True,
            )
        )

        assert runner.command() == [
            "anka", "--debug", "run", "--volume", "/tmp/share", "--user", "admin",
            "--wait-network", "--wait-time", "foo", "true",
        ]

    def test_relays_output_and_exit_code(self, fake_anka):
        stdout, stderr = io.BytesIO(), io.BytesIO()
        runner = GuestRunner(
            RunParams(vm_name="foo", command=["ls"], stdout=stdout, stderr=stderr),
            tool=fake_anka("echo 'out line'\necho 'err line' >&2\nexit 3"),
        )

        runner.start()
        exit_code = runner.wait()

        assert exit_code == 3
        assert stdout.getvalue() == b"out line\n"
        assert stderr.getvalue() == b"err line\n"

    def test_stdin_is_copied_and_closed(self, fake_anka):
        stdout = io.BytesIO()
        runner = GuestRunner(
            RunParams(vm_name="foo", command=["cat"], stdin=io.BytesIO(b"hello guest\n"), stdout=stdout),
            tool=fake_anka("cat"),
        )

        runner.start()

        assert runner.wait() == 0
        assert stdout.getvalue() == b"hello guest\n"

    def test_disconnect_sentinel(self, fake_anka):
        """A dropped connection is reported with the sentinel exit code."""
        runner = GuestRunner(
            RunParams(vm_name="foo", command=["sleep", "100"], stderr=io.BytesIO()),
            tool=fake_anka("echo 'Connection to VM disconnected' >&2\nexit 1"),
        )

        runner.start()

        assert runner.wait() == DISCONNECTED_EXIT_CODE

    def test_disconnect_message_with_success_exit(self, fake_anka):
        runner = GuestRunner(
            RunParams(vm_name="foo", command=["true"], stderr=io.BytesIO()),
            tool=fake_anka("echo 'disconnected' >&2\nexit 0"),
        )

        runner.start()

        assert runner.wait() == 0

    def test_wait_before_start(self):
        with pytest.raises(TransportError):
            GuestRunner(RunParams(vm_name="foo", command=["true"])).wait()
