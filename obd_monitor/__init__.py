"""
OBD Monitor - ELM327 live-data and trouble-code engine

Talks to an ELM327-class adapter over WiFi, BLE, or a serial port,
polls a fixed set of engine parameters round-robin, and reads or clears
stored trouble codes on demand.

Usage:
    from obd_monitor.engine import SessionEngine
    from obd_monitor.transport import WiFiTransport

    engine = SessionEngine()
    engine.connect(WiFiTransport())
"""

__version__ = "1.0.0"
