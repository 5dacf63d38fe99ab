#!/usr/bin/env python3
"""
Mini-Box DCDC-NUC MCP Server

Exposes the DCDC-NUC status reader as MCP tools for LLM-driven monitoring.

Requires: Python 3.10+, fastmcp (`pip install fastmcp`), pyusb

Run:
    python dcdc_nuc_mcp.py                      # stdio transport

Or register it with an MCP client:
    {
        "mcpServers": {
            "dcdc-nuc": {
                "command": "python3",
                "args": ["dcdc_nuc_mcp.py"]
            }
        }
    }
"""

import json
from typing import Optional

from fastmcp import FastMCP

from dcdc_nuc import NUC_PID, NUC_VID, DcdcNuc, StatusSnapshot, TransportError

mcp = FastMCP(
    "DCDC-NUC Power Supply",
    instructions=(
        "Reads the status of a Mini-Box DCDC-NUC automotive power supply over "
        "USB. Always connect() first, then call get_status(). The supply is "
        "read-only through this server: it reports input/output voltage, "
        "current and power, temperature, ignition state, the startup state "
        "machine position and its internal timers. A transport error is "
        "transient; call get_status() again on the next poll."
    ),
)

# Global device handle — one connection at a time
_nuc: Optional[DcdcNuc] = None


def _require_connection() -> DcdcNuc:
    if _nuc is None:
        raise RuntimeError("Not connected. Call connect() first.")
    return _nuc


def _fmt(value: float, decimals: int = 3) -> float:
    """Round a float for clean JSON output."""
    return round(value, decimals)


def _snapshot_json(status: StatusSnapshot) -> dict:
    data = status.as_dict()
    for key in ["input_voltage", "output_voltage", "ignition_voltage",
                "thump_voltage", "output_power"]:
        data[key] = _fmt(data[key], 2)
    for key in ["input_current", "output_current"]:
        data[key] = _fmt(data[key], 3)
    data["temperature"] = _fmt(data["temperature"], 1)
    data["state_name"] = status.state_name
    data["mode_name"] = status.mode_name
    data["firmware_version"] = status.firmware_version
    return data


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def connect(vendor_id: int = NUC_VID, product_id: int = NUC_PID) -> str:
    """Connect to the DCDC-NUC power supply.

    Claims the device's USB interface and reads a first status snapshot to
    report the firmware version and operating mode.

    Args:
        vendor_id: USB vendor id (default 0x04D8).
        product_id: USB product id (default 0xD006).
    """
    global _nuc
    if _nuc is not None:
        return json.dumps({"error": "Already connected. disconnect() first."})

    nuc = DcdcNuc(vendor_id=vendor_id, product_id=product_id)
    nuc.connect()
    try:
        status = nuc.get_status()
    except Exception:
        nuc.disconnect()
        raise
    _nuc = nuc

    return json.dumps({
        "status": "connected",
        "firmware": status.firmware_version,
        "mode": status.mode_name,
        "state": status.state_name,
    })


@mcp.tool()
def disconnect() -> str:
    """Disconnect from the DCDC-NUC and release its USB interface."""
    global _nuc
    if _nuc is None:
        return json.dumps({"status": "already disconnected"})

    _nuc.disconnect()
    _nuc = None
    return json.dumps({"status": "disconnected"})


@mcp.tool()
def get_status() -> str:
    """Read the full status of the DCDC-NUC.

    Returns a JSON object with every status flag (protection, ignition,
    output enable, dumb/automotive mode), input/output voltage, current and
    power, ignition and thump voltage, temperature, the state machine
    position and the ten internal timers.

    A transient USB error returns {"error": ..., "last_status": ...} where
    last_status is the previous good reading (or null).
    """
    nuc = _require_connection()
    try:
        status = nuc.get_status()
    except TransportError as e:
        last = nuc.last_status
        return json.dumps({
            "error": str(e),
            "transient": True,
            "last_status": _snapshot_json(last) if last else None,
        })
    return json.dumps(_snapshot_json(status))


@mcp.tool()
def read_temperature() -> str:
    """Read the DCDC-NUC temperature in degrees Celsius."""
    nuc = _require_connection()
    return json.dumps({"temperature": _fmt(nuc.read_temperature(), 1)})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main():
    mcp.run()


if __name__ == "__main__":
    main()
