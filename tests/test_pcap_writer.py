import struct
import time
from pathlib import Path
from typing import List

import pytest
from scapy.packet import Raw
from scapy.utils import rdpcap

from flagmon.dump.pcap_writer import PCAP_MAGIC, CaptureFileWriter, render_path
from flagmon.errors import CaptureFileError
from flagmon.packets import CaptureInfo, raw_bytes

from packet_helpers import FakeClock, tcp_packet


def write_packet(writer: CaptureFileWriter, payload: bytes, ts: float = 1_700_000_000.25) -> None:
    pkt = tcp_packet(payload, ts=ts)
    writer.write(CaptureInfo.from_packet(pkt), raw_bytes(pkt))


def test_writer_writes_global_header(tmp_path: Path) -> None:
    writer = CaptureFileWriter(str(tmp_path / "out.pcap"), snaplen=1600, linktype=1)
    writer.close()

    header = writer.path.read_bytes()
    assert len(header) == 24
    magic, major, minor, _zone, _sigfigs, snaplen, linktype = struct.unpack("<IHHiIII", header)
    assert (magic, major, minor, snaplen, linktype) == (PCAP_MAGIC, 2, 4, 1600, 1)


def test_writer_records_are_readable_by_scapy(tmp_path: Path) -> None:
    with CaptureFileWriter(str(tmp_path / "out.pcap")) as writer:
        write_packet(writer, b"first", ts=1_700_000_000.25)
        write_packet(writer, b"second", ts=1_700_000_001.5)

    packets = rdpcap(str(writer.path))
    assert [p[Raw].load for p in packets] == [b"first", b"second"]
    assert float(packets[0].time) == pytest.approx(1_700_000_000.25)
    assert float(packets[1].time) == pytest.approx(1_700_000_001.5)
    assert writer.records == 2


def test_writer_truncates_to_snaplen_and_keeps_original_length(tmp_path: Path) -> None:
    writer = CaptureFileWriter(str(tmp_path / "out.pcap"), snaplen=64)
    write_packet(writer, b"A" * 200)
    writer.close()

    data = writer.path.read_bytes()
    _ts, _us, incl_len, orig_len = struct.unpack("<IIII", data[24:40])
    assert incl_len == 64
    assert orig_len > 200
    assert len(data) == 24 + 16 + 64


def test_close_fires_hook_once_with_final_path(tmp_path: Path) -> None:
    calls: List[Path] = []
    writer = CaptureFileWriter(str(tmp_path / "out.pcap"))
    writer.set_close_hook(calls.append)
    write_packet(writer, b"x")

    writer.close()
    writer.close()

    assert calls == [writer.path]
    assert writer.closed


def test_double_close_does_not_touch_other_writers(tmp_path: Path) -> None:
    first = CaptureFileWriter(str(tmp_path / "a.pcap"))
    second = CaptureFileWriter(str(tmp_path / "b.pcap"))
    first.close()
    write_packet(second, b"still-open")
    first.close()
    second.close()

    assert [p[Raw].load for p in rdpcap(str(second.path))] == [b"still-open"]


def test_write_after_close_raises(tmp_path: Path) -> None:
    writer = CaptureFileWriter(str(tmp_path / "out.pcap"))
    writer.close()
    with pytest.raises(CaptureFileError):
        write_packet(writer, b"late")


def test_failing_hook_is_logged_not_raised(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    def broken(_path: Path) -> None:
        raise RuntimeError("post command exploded")

    writer = CaptureFileWriter(str(tmp_path / "out.pcap"))
    writer.set_close_hook(broken)
    writer.close()

    assert writer.closed
    assert "Close hook failed" in caplog.text


def test_template_is_rendered_with_strftime(tmp_path: Path) -> None:
    clock = FakeClock(time.mktime((2024, 5, 17, 13, 45, 10, 0, 0, -1)))
    writer = CaptureFileWriter(str(tmp_path / "cap-%Y%m%d-%H%M%S.pcap"), clock=clock)
    writer.close()
    assert writer.path.name == "cap-20240517-134510.pcap"


def test_existing_file_is_never_overwritten(tmp_path: Path) -> None:
    template = str(tmp_path / "same.pcap")
    first = CaptureFileWriter(template)
    second = CaptureFileWriter(template)
    third = CaptureFileWriter(template)
    for w in (first, second, third):
        w.close()

    assert first.path.name == "same.pcap"
    assert second.path.name == "same-0001.pcap"
    assert third.path.name == "same-0002.pcap"


def test_render_path_creates_nothing(tmp_path: Path) -> None:
    path = render_path(str(tmp_path / "x-%Y.pcap"), 0.0)
    assert not path.exists()


def test_parent_directories_are_created(tmp_path: Path) -> None:
    writer = CaptureFileWriter(str(tmp_path / "nested" / "dir" / "out.pcap"))
    writer.close()
    assert writer.path.exists()


def test_unwritable_location_raises_capture_file_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file", encoding="utf-8")
    with pytest.raises(CaptureFileError) as excinfo:
        CaptureFileWriter(str(blocker / "out.pcap"))
    assert "create failed" in str(excinfo.value)
