"""
Tool Head Alignment - Nozzle Offset Package

This package contains the camera based nozzle alignment system for
multi-tool printers.

Modules:
- alignment: Nozzle location, aggregation, printer client and calibration sessions
- scripts: Command line entry points
"""
