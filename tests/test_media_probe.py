import pytest

from client import media_probe
from client.media_probe import MediaProbeError, probe_duration


class DummyCapture:
    def __init__(self, props: dict, *, opened: bool = True) -> None:
        self.props = dict(props)
        self.opened = opened
        self.released = False

    def isOpened(self) -> bool:
        return self.opened

    def get(self, prop: int) -> float:
        return self.props.get(prop, 0.0)

    def set(self, prop: int, value: float) -> bool:
        if prop == media_probe.cv2.CAP_PROP_POS_AVI_RATIO and value == 1.0:
            self.props[media_probe.cv2.CAP_PROP_POS_MSEC] = self.props.get("end_ms", 0.0)
        return True

    def release(self) -> None:
        self.released = True


@pytest.fixture
def video_file(tmp_path):
    path = tmp_path / "movie.mp4"
    path.write_bytes(b"\x00")
    return path


def _install(monkeypatch, capture: DummyCapture) -> None:
    monkeypatch.setattr(media_probe.cv2, "VideoCapture", lambda source: capture)


def test_duration_from_frame_count(monkeypatch, video_file) -> None:
    cv2 = media_probe.cv2
    capture = DummyCapture({cv2.CAP_PROP_FPS: 25.0, cv2.CAP_PROP_FRAME_COUNT: 3000.0})
    _install(monkeypatch, capture)

    assert probe_duration(video_file) == pytest.approx(120.0)
    assert capture.released


def test_duration_falls_back_to_end_position(monkeypatch, video_file) -> None:
    capture = DummyCapture({"end_ms": 95_500.0})
    _install(monkeypatch, capture)

    assert probe_duration(str(video_file)) == pytest.approx(95.5)


def test_unreadable_and_missing_files(monkeypatch, video_file, tmp_path) -> None:
    with pytest.raises(MediaProbeError):
        probe_duration(tmp_path / "missing.mp4")

    capture = DummyCapture({}, opened=False)
    _install(monkeypatch, capture)
    with pytest.raises(MediaProbeError):
        probe_duration(video_file)
    assert capture.released

    _install(monkeypatch, DummyCapture({}))
    with pytest.raises(MediaProbeError, match="no duration"):
        probe_duration(video_file)
