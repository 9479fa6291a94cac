"""
Peltier Container Temperature Controller
==========================================
Holds a container at a target temperature by reading a thermocouple
through a GMT PLC (Modbus/TCP) and switching two Peltier coolers.

Target Hardware: GMT PLC with GMX-20UA thermocouple module
I/O Interface:  Modbus/TCP (custom raw-socket client)
"""

__version__ = "1.0.0"
