"""
Tests for the Docker container runtime.
"""

import subprocess
import threading
from unittest.mock import MagicMock, Mock, patch

import docker.errors
import pytest
import requests.exceptions

from conftest import postgres_raw
from postgres_supervisor import (
    ContainerStatus,
    DockerRuntime,
    ExecResult,
    ExternalToolError,
    OperationCancelledError,
    OperationTimeoutError,
    TransientRuntimeError,
    validate,
)


def api_error(status_code: int) -> docker.errors.APIError:
    response = Mock(status_code=status_code, url="http+docker://localhost/v1.43", reason="Error")
    return docker.errors.APIError("request failed", response=response, explanation="daemon says no")


class TestDockerRuntime:
    """Test container control through the Docker SDK."""

    def setup_method(self):
        self.client = MagicMock()
        self.container = MagicMock(id="abc123")
        self.client.containers.get.return_value = self.container
        self.runtime = DockerRuntime("proj", client=self.client)

    def test_requires_client(self):
        """Test that the runtime must be entered before use."""
        runtime = DockerRuntime()

        with pytest.raises(ExternalToolError, match="Use as context manager"):
            runtime.status("postgres")

    @patch("postgres_supervisor.runtime.docker.from_env")
    def test_context_manager_owns_client(self, mock_from_env):
        """Test that a client created on entry is closed on exit."""
        client = mock_from_env.return_value

        with DockerRuntime() as runtime:
            assert runtime.client is client

        client.close.assert_called_once()
        assert runtime.client is None

        with pytest.raises(ExternalToolError, match="Use as context manager"):
            runtime.exec("postgres", ["pg_isready"])

    def test_context_manager_keeps_given_client(self):
        """Test that a caller-provided client is left open."""
        with self.runtime:
            pass

        self.client.close.assert_not_called()

    @patch("postgres_supervisor.runtime.docker.from_env")
    def test_daemon_unavailable(self, mock_from_env):
        """Test that a missing daemon is a transient runtime error."""
        mock_from_env.side_effect = docker.errors.DockerException("Error while fetching server API version")

        with pytest.raises(TransientRuntimeError, match="connect to Docker"):
            with DockerRuntime():
                pass

    def test_status(self):
        """Test status derived from the container's inspect data."""
        self.container.attrs = {
            "State": {"Running": True, "ExitCode": 0, "Health": {"Status": "healthy"}}
        }

        assert self.runtime.status("postgres") == ContainerStatus(
            exists=True, running=True, health="healthy", exit_code=0
        )

    def test_status_missing_container(self):
        """Test that a missing container reports exists=False."""
        self.client.containers.get.side_effect = docker.errors.NotFound("No such container")

        assert self.runtime.status("postgres") == ContainerStatus(exists=False)

    @pytest.mark.parametrize(
        "error, expected",
        [
            (requests.exceptions.ConnectionError("refused"), TransientRuntimeError),
            (requests.exceptions.ReadTimeout("slow"), TransientRuntimeError),
            (api_error(503), TransientRuntimeError),
            (api_error(500), ExternalToolError),
            (api_error(409), ExternalToolError),
        ],
    )
    def test_error_mapping(self, error, expected):
        """Test that SDK failures map onto transient or permanent errors."""
        self.client.containers.get.side_effect = error

        with pytest.raises(expected):
            self.runtime.status("postgres")

    def test_create(self):
        """Test the container options derived from a service spec."""
        self.client.containers.get.side_effect = docker.errors.NotFound("No such container")
        self.client.containers.create.return_value = Mock(id="new123")
        spec = validate(
            postgres_raw(
                ports=["127.0.0.1:5432:5432"],
                volumes=["database:/var/lib/postgresql/data", "./init:/docker-entrypoint-initdb.d:ro"],
                networks=["backend"],
                deploy={"resources": {"limits": {"memory": "1g", "cpus": "0.5"}}},
            ),
            name="postgres",
        )

        assert self.runtime.create(spec) == "new123"

        args, kwargs = self.client.containers.create.call_args
        assert args == ("postgres:16",)
        assert kwargs["name"] == "postgres"
        assert kwargs["environment"]["POSTGRES_PASSWORD"] == "secret"
        assert kwargs["ports"] == {"5432/tcp": ("127.0.0.1", 5432)}
        assert kwargs["mounts"][0]["Source"] == "proj_database"
        assert kwargs["mounts"][0]["Target"] == "/var/lib/postgresql/data"
        assert kwargs["mounts"][1]["Source"] == "./init"
        assert kwargs["mounts"][1]["ReadOnly"] is True
        assert kwargs["labels"] == {
            "com.docker.compose.service": "postgres",
            "com.docker.compose.project": "proj",
        }
        assert kwargs["network"] == "proj_backend"
        assert kwargs["mem_limit"] == 1024**3
        assert kwargs["nano_cpus"] == 500_000_000
        assert kwargs["healthcheck"] == {
            "test": ["CMD", "/bin/sh", "-c", "pg_isready -U app"],
            "interval": 30_000_000_000,
            "timeout": 10_000_000_000,
            "retries": 3,
            "start_period": 0,
        }

    def test_create_reuses_existing_container(self):
        """Test that an existing container with the same name is reused."""
        spec = validate(postgres_raw(), name="postgres")

        assert self.runtime.create(spec) == "abc123"
        self.client.containers.create.assert_not_called()

    def test_create_pulls_missing_image(self):
        """Test that a missing image is pulled before retrying create."""
        self.client.containers.get.side_effect = docker.errors.NotFound("No such container")
        self.client.containers.create.side_effect = [
            docker.errors.ImageNotFound("No such image"),
            Mock(id="new123"),
        ]
        spec = validate(postgres_raw(), name="postgres")

        assert self.runtime.create(spec) == "new123"
        self.client.images.pull.assert_called_once_with("postgres:16")

    def test_start_missing_container(self):
        """Test that starting a container that does not exist fails."""
        self.client.containers.get.side_effect = docker.errors.NotFound("No such container")

        with pytest.raises(ExternalToolError, match="No container found"):
            self.runtime.start("postgres")

    def test_stop_graceful(self):
        """Test SIGTERM stops with the grace timeout."""
        self.runtime.stop("postgres", grace_timeout=15)

        self.container.stop.assert_called_once_with(timeout=15)

    def test_stop_with_custom_signal_escalates(self):
        """Test that a container ignoring a custom signal is killed."""
        self.container.wait.side_effect = requests.exceptions.ReadTimeout("timed out")

        self.runtime.stop("postgres", signal="SIGINT", grace_timeout=1)

        assert self.container.kill.call_args_list[0].kwargs == {"signal": "SIGINT"}
        assert self.container.kill.call_count == 2

    def test_stop_missing_container(self):
        """Test that stopping a missing container is a no-op."""
        self.client.containers.get.side_effect = docker.errors.NotFound("No such container")

        self.runtime.stop("postgres")

    def test_remove(self):
        """Test forced removal including anonymous volumes."""
        self.runtime.remove("postgres", volumes=True)

        self.container.remove.assert_called_once_with(force=True, v=True)

    def test_remove_volume(self):
        """Test that named volumes are resolved with the project prefix."""
        self.runtime.remove_volume("database")

        self.client.volumes.get.assert_called_once_with("proj_database")
        self.client.volumes.get.return_value.remove.assert_called_once()

    def test_exec(self):
        """Test demultiplexed exec output."""
        self.container.exec_run.return_value = (1, (b"out", b"err"))

        result = self.runtime.exec("postgres", ["pg_isready"])

        assert result == ExecResult(1, b"out", b"err")
        self.container.exec_run.assert_called_once_with(["pg_isready"], demux=True)

    def test_exec_without_output(self):
        """Test exec results with no captured streams."""
        self.container.exec_run.return_value = (0, (None, None))

        assert self.runtime.exec("postgres", ["true"]) == ExecResult(0)

    def test_logs(self):
        """Test log chunks are streamed from the container."""
        self.container.logs.return_value = iter([b"one\n", b"two\n"])

        assert list(self.runtime.logs("postgres", follow=True)) == [b"one\n", b"two\n"]
        self.container.logs.assert_called_once_with(stream=True, follow=True)


class TestStream:
    """Test long-running execs through the docker CLI."""

    def setup_method(self):
        self.runtime = DockerRuntime(client=MagicMock(), poll_interval=0.01, kill_grace=0.01)

    @patch("postgres_supervisor.runtime.subprocess.Popen")
    def test_stream_success(self, mock_popen, tmp_path):
        """Test that env values are passed by name, not in argv."""
        mock_popen.return_value.wait.return_value = 0

        with open(tmp_path / "out.sql", "wb") as out:
            result = self.runtime.stream(
                "postgres", ["pg_dump", "-U", "app"], stdout=out, env={"PGPASSWORD": "secret"}
            )

        assert result.exit_code == 0
        args, kwargs = mock_popen.call_args
        assert args[0] == ["docker", "exec", "-i", "-e", "PGPASSWORD", "postgres", "pg_dump", "-U", "app"]
        assert kwargs["env"]["PGPASSWORD"] == "secret"
        assert kwargs["stdin"] is subprocess.DEVNULL
        assert kwargs["stdout"] is out

    @patch("postgres_supervisor.runtime.subprocess.Popen")
    def test_stream_timeout_terminates_process(self, mock_popen):
        """Test that a command outliving its timeout is terminated."""
        process = mock_popen.return_value
        terminated = threading.Event()
        process.terminate.side_effect = terminated.set

        def wait(timeout=None):
            if terminated.is_set():
                return -15
            raise subprocess.TimeoutExpired("docker", timeout)

        process.wait.side_effect = wait

        with pytest.raises(OperationTimeoutError) as exc_info:
            self.runtime.stream("postgres", ["pg_dump"], timeout=0.05)

        assert exc_info.value.operation == "pg_dump"
        process.terminate.assert_called_once()
        process.kill.assert_not_called()

    @patch("postgres_supervisor.runtime.subprocess.Popen")
    def test_stream_kills_process_ignoring_sigterm(self, mock_popen):
        """Test that a process surviving SIGTERM is killed."""
        process = mock_popen.return_value

        def wait(timeout=None):
            if timeout is None:
                return -9
            raise subprocess.TimeoutExpired("docker", timeout)

        process.wait.side_effect = wait

        with pytest.raises(OperationTimeoutError):
            self.runtime.stream("postgres", ["pg_dump"], timeout=0.02)

        process.kill.assert_called_once()

    @patch("postgres_supervisor.runtime.subprocess.Popen")
    def test_stream_cancelled(self, mock_popen):
        """Test that a set cancel flag stops the command."""
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(OperationCancelledError):
            self.runtime.stream("postgres", ["psql"], cancel=cancel)

        mock_popen.return_value.terminate.assert_called_once()

    @patch("postgres_supervisor.runtime.subprocess.Popen")
    def test_docker_cli_missing(self, mock_popen):
        """Test a clear error when the docker CLI is not installed."""
        mock_popen.side_effect = FileNotFoundError("docker")

        with pytest.raises(ExternalToolError, match="Docker CLI not found"):
            self.runtime.stream("postgres", ["pg_dump"])
