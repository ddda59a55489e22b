"""Tests for autofwd/detector/docker.py"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from autofwd.detector.docker import (
    DOCKER_PS_FORMAT,
    ContainerInfo,
    DockerDetector,
    parse_docker_ps,
    parse_labels,
)

LABEL = "auto.port.forwarding.enabled"


def make_detector(events):
    return DockerDetector(
        lambda c: events.append(("start", c.id)),
        lambda c: events.append(("stop", c.id)),
        label_selector=LABEL,
    )


def fake_process(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0):
    proc = MagicMock()
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.returncode = returncode
    return proc


class TestParsing:
    def test_parse_labels(self):
        assert parse_labels(f"{LABEL}=true,com.example.team=web") == {
            LABEL: "true",
            "com.example.team": "web",
        }

    def test_parse_labels_empty(self):
        assert parse_labels("") == {}

    def test_parse_label_without_value(self):
        assert parse_labels("flag") == {"flag": ""}

    def test_parse_docker_ps(self):
        output = (
            f"abc123\tweb\t{LABEL}=true\n"
            "def456\tdb\tcom.example.tier=data\n"
            "ghi789\tbare\t\n"
        )
        containers = parse_docker_ps(output)
        assert [c.id for c in containers] == ["abc123", "def456", "ghi789"]
        assert containers[0].labels == {LABEL: "true"}
        assert containers[2].labels == {}

    def test_malformed_lines_are_skipped(self):
        output = "only-one-field\n\nabc123\tweb\t\n"
        assert [c.id for c in parse_docker_ps(output)] == ["abc123"]


class TestGetContainers:
    """`docker ps` invocation and label filtering"""

    @pytest.mark.asyncio
    async def test_filters_by_label(self):
        output = f"abc123\tweb\t{LABEL}=true\ndef456\tdb\tother=1\n".encode()
        detector = make_detector([])

        with patch(
            "asyncio.create_subprocess_exec", AsyncMock(return_value=fake_process(output))
        ) as mock_exec:
            containers = await detector.get_containers()

        assert [c.id for c in containers] == ["abc123"]
        args = mock_exec.call_args[0]
        assert args[:4] == ("docker", "ps", "--format", DOCKER_PS_FORMAT)

    @pytest.mark.asyncio
    async def test_nonzero_exit_returns_none(self):
        detector = make_detector([])
        proc = fake_process(stderr=b"Cannot connect to the Docker daemon", returncode=1)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            assert await detector.get_containers() is None

    @pytest.mark.asyncio
    async def test_missing_docker_binary_returns_none(self):
        detector = DockerDetector(
            lambda c: None,
            lambda c: None,
            label_selector=LABEL,
            docker_command="/nonexistent/autofwd-test-docker",
        )
        assert await detector.get_containers() is None


class TestCheckContainers:
    """Inventory diffing"""

    @pytest.mark.asyncio
    async def test_first_tick_reports_running_containers(self):
        events = []
        detector = make_detector(events)
        detector.get_containers = AsyncMock(return_value=[ContainerInfo("abc123", "web")])

        await detector.check_containers()

        assert events == [("start", "abc123")]
        assert set(detector.containers) == {"abc123"}

    @pytest.mark.asyncio
    async def test_start_and_stop_sequence(self):
        events = []
        detector = make_detector(events)
        detector.get_containers = AsyncMock(
            side_effect=[
                [ContainerInfo("a", "one")],
                [ContainerInfo("a", "one"), ContainerInfo("b", "two")],
                [ContainerInfo("b", "two")],
                [],
            ]
        )

        for _ in range(4):
            await detector.check_containers()

        assert events == [("start", "a"), ("start", "b"), ("stop", "a"), ("stop", "b")]
        assert detector.containers == {}

    @pytest.mark.asyncio
    async def test_stop_event_carries_last_seen_info(self):
        stopped = []
        detector = DockerDetector(lambda c: None, stopped.append, label_selector=LABEL)
        detector.get_containers = AsyncMock(
            side_effect=[[ContainerInfo("a", "web", {LABEL: "true"})], []]
        )

        await detector.check_containers()
        await detector.check_containers()

        assert stopped == [ContainerInfo("a", "web", {LABEL: "true"})]

    @pytest.mark.asyncio
    async def test_docker_failure_keeps_inventory(self):
        events = []
        detector = make_detector(events)
        detector.get_containers = AsyncMock(side_effect=[[ContainerInfo("a", "one")], None, []])

        await detector.check_containers()
        await detector.check_containers()
        assert events == [("start", "a")]
        assert set(detector.containers) == {"a"}

        await detector.check_containers()
        assert events == [("start", "a"), ("stop", "a")]
