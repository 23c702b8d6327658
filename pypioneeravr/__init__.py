"""pypioneeravr Python Package

Python library for controlling Pioneer AV receivers over their telnet port.
"""

from pypioneeravr.avr import PioneerAVR
from pypioneeravr.listener import AVRListener, LoggingListener

__all__ = ["PioneerAVR", "AVRListener", "LoggingListener"]
