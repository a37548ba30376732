"""
OBD Link - ELM327 OBD-II Client Protocol Stack

Talks to an ELM327/OBDLink adapter over one serial, Bluetooth or WiFi channel.
Decodes live sensor data and trouble codes, and polls many sensors at once
through a single-flight gate.
"""

__version__ = "1.0.0"
