from flagmon.dump.pcap_writer import CaptureFileWriter
from flagmon.dump.rotating import RotatingCaptureWriter

__all__ = ["CaptureFileWriter", "RotatingCaptureWriter"]
