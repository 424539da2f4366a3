import json
import os
import stat
import sys
import textwrap
import time
from pathlib import Path
from typing import List

import pytest
from httpx import ASGITransport, AsyncClient

from durable_ffmpeg.api.main import create_app
from durable_ffmpeg.jobs import ProcessingRequest
from durable_ffmpeg.models import ServiceConfig
from durable_ffmpeg.service import MediaService

# Behaves like just enough of ffmpeg/ffprobe for the service: reads its
# behaviour from mode.json next to itself and logs every invocation.
FAKE_ENCODER_SCRIPT = textwrap.dedent(
    '''
    import json
    import os
    import sys
    import time

    HERE = os.path.dirname(os.path.abspath(__file__))
    args = sys.argv[1:]


    def log(name, entry):
        with open(os.path.join(HERE, name), "a") as f:
            f.write(json.dumps(entry) + "\\n")


    def progress(t):
        sys.stderr.write(
            "frame=%d\\nfps=25.00\\nbitrate=800.0kbits/s\\nout_time=00:00:%09.6f\\n"
            "speed=1.00x\\nprogress=continue\\n" % (int(t * 25), t)
        )
        sys.stderr.flush()


    if args and args[0] == "--probe":
        target = args[-1]
        log("probes.log", {"pid": os.getpid(), "args": args[1:]})
        if not os.path.exists(target):
            sys.exit(1)
        print(json.dumps({
            "format": {"filename": target, "format_name": "mov,mp4", "duration": "2.000000",
                       "size": str(os.path.getsize(target)), "nb_streams": 1},
            "streams": [{"index": 0, "codec_type": "video", "codec_name": "h264",
                         "width": 320, "height": 240, "avg_frame_rate": "25/1",
                         "r_frame_rate": "25/1"}],
        }))
        sys.exit(0)

    if "-version" in args:
        print("ffmpeg version 6.0-fake")
        sys.exit(0)

    with open(os.path.join(HERE, "mode.json")) as f:
        cfg = json.load(f)

    log("invocations.log", {"pid": os.getpid(), "args": args, "start": time.time()})
    with open(os.path.join(HERE, "invocations.log")) as f:
        count = sum(1 for _ in f)
    modes = cfg["modes"]
    mode = modes[min(count - 1, len(modes) - 1)]
    output = args[-1]

    sys.stderr.write("Input #0, mov,mp4, from 'input':\\n  Duration: 00:00:02.00, start: 0.000000\\n")
    sys.stderr.flush()

    if mode == "success":
        start = time.time()
        hold = cfg.get("hold_s", 0.0)
        t = 0.0
        while time.time() - start < hold:
            progress(min(t, 1.9))
            t += 0.1
            time.sleep(0.05)
        with open(args[args.index("-i") + 1], "rb") as src:
            data = src.read()
        with open(output, "wb") as f:
            f.write(b"encoded:" + data)
        progress(2.0)
        sys.stderr.write("progress=end\\n")
        log("spans.log", {"pid": os.getpid(), "start": start, "end": time.time()})
        sys.exit(0)
    elif mode == "fatal":
        sys.stderr.write("input: Invalid data found when processing input\\n")
        sys.exit(1)
    elif mode == "recoverable":
        sys.stderr.write("av_malloc: Resource temporarily unavailable\\n")
        sys.exit(1)
    elif mode == "unknown":
        sys.stderr.write("something odd happened\\n")
        sys.exit(3)
    elif mode == "no-output":
        sys.exit(0)
    elif mode == "hang":
        t = 0.0
        while True:
            progress(t % 2.0)
            t += 0.1
            time.sleep(0.1)
    elif mode == "silent":
        time.sleep(3600)
    '''
)


class FakeEncoder:
    """Handle on the fake ffmpeg/ffprobe pair installed in a temp dir."""

    def __init__(self, directory: Path):
        self.dir = directory
        self.script = directory / "fake_ffmpeg.py"
        self.path = str(directory / "ffmpeg")
        self.probe_path = str(directory / "ffprobe")

        self.script.write_text(FAKE_ENCODER_SCRIPT)
        self._wrapper(self.path, "")
        self._wrapper(self.probe_path, "--probe ")
        self.set_modes("success")

    def _wrapper(self, path: str, extra: str) -> None:
        Path(path).write_text(f'#!/bin/sh\nexec "{sys.executable}" "{self.script}" {extra}"$@"\n')
        os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    def set_modes(self, *modes: str, hold_s: float = 0.0) -> None:
        """Modes are consumed one per invocation; the last one repeats."""
        (self.dir / "mode.json").write_text(json.dumps({"modes": list(modes), "hold_s": hold_s}))

    def _read(self, name: str) -> List[dict]:
        log = self.dir / name
        if not log.exists():
            return []
        return [json.loads(line) for line in log.read_text().splitlines() if line.strip()]

    @property
    def invocations(self) -> List[dict]:
        return self._read("invocations.log")

    @property
    def probes(self) -> List[dict]:
        return self._read("probes.log")

    @property
    def spans(self) -> List[dict]:
        return self._read("spans.log")

    def max_overlap(self) -> int:
        """Largest number of successful encoder runs alive at the same instant."""
        events = []
        for span in self.spans:
            events.append((span["start"], 1))
            events.append((span["end"], -1))
        current = peak = 0
        for _, delta in sorted(events, key=lambda e: (e[0], e[1])):
            current += delta
            peak = max(peak, current)
        return peak

    def wait_for_invocations(self, count: int = 1, timeout: float = 10.0) -> List[dict]:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            found = self.invocations
            if len(found) >= count:
                return found
            time.sleep(0.05)
        raise AssertionError(f"encoder was not invoked {count} time(s) within {timeout}s")


@pytest.fixture
def fake_encoder(tmp_path):
    """Fake ffmpeg that succeeds unless told otherwise."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    return FakeEncoder(bin_dir)


@pytest.fixture
def source_file(tmp_path):
    """A small stand-in for in.mp4."""
    path = tmp_path / "in.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"fake video" * 100)
    return path


@pytest.fixture
def make_config(tmp_path, fake_encoder):
    """Build a ServiceConfig rooted in tmp_path with zero backoff."""

    def _make(**sections) -> ServiceConfig:
        data = {
            "encoder": {
                "binary_path": fake_encoder.path,
                "probe_binary_path": fake_encoder.probe_path,
                "concurrency_limit": 2,
                "kill_grace_period_s": 1.0,
            },
            "retry": {
                "max_attempts": 3,
                "backoff_base_s": 0.0,
                "backoff_ceiling_s": 0.0,
                "suspend_threshold_s": 30.0,
            },
            "storage": {
                "work_root": str(tmp_path / "work"),
                "output_root": str(tmp_path / "outputs"),
                "journal_path": str(tmp_path / "journal.db"),
            },
            "server": {"handle_wait_s": 30.0, "max_workers": 8},
        }
        for section, values in sections.items():
            data.setdefault(section, {}).update(values)
        return ServiceConfig.from_dict(data)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def make_service(make_config):
    """Factory for MediaService instances; all are shut down after the test."""
    services = []

    def _make(config=None, **kwargs) -> MediaService:
        service = MediaService(config or make_config(), **kwargs)
        services.append(service)
        return service

    yield _make

    for service in services:
        service.shutdown()


@pytest.fixture
def service(make_service, config):
    return make_service(config)


@pytest.fixture
def job_request(source_file):
    """The end-to-end request: job-1, h264 at 2M."""
    return ProcessingRequest(
        key="job-1",
        source=str(source_file),
        output={"codec": "h264", "bitrate": "2M"},
    )


@pytest.fixture(scope="function")
async def client(service):
    app = create_app(service=service)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
