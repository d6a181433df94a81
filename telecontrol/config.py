"""
Telecontrol Configuration
IEC 60870-5-104 link parameters and logging setup
"""

import logging
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator

# ==================== IEC 60870-5-104 PROTOCOL ====================

IEC104_CONFIG = {
    "port": int(os.getenv("IEC104_PORT", "2404")),
    "t0_timeout_s": 30,  # Connection establishment timeout
    "t1_timeout_s": 15,  # Response timeout for sent APDUs
    "t2_timeout_s": 10,  # Acknowledgment timeout (t2 < t1)
    "t3_timeout_s": 20,  # Test frame interval when idle
    "k_window": 12,      # Max unacknowledged APDUs
    "w_window": 8,       # Latest acknowledgment after w APDUs
    "common_address_size": 2,
    "originator_address": True,
    "command_timeout_s": 10,
    "interrogation_timeout_s": 60,
    "select_timeout_s": 10,   # Select-before-operate window
    "max_clients": 5,
    "send_end_of_init": False,
}

# ==================== LOGGING CONFIGURATION ====================

LOGGING_CONFIG = {
    "level": os.getenv("LOG_LEVEL", "INFO"),
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


class IEC104Settings(BaseModel):
    """Validated IEC 104 link parameters"""
    port: int = Field(default=2404, ge=1, le=65535)
    t0_timeout_s: float = Field(default=30, gt=0, description="Connection establishment timeout")
    t1_timeout_s: float = Field(default=15, gt=0, description="Timeout for sent I frames and U activations")
    t2_timeout_s: float = Field(default=10, gt=0, description="Acknowledge received I frames within t2")
    t3_timeout_s: float = Field(default=20, gt=0, description="Send TESTFR after t3 idle")
    k_window: int = Field(default=12, ge=1, le=32767)
    w_window: int = Field(default=8, ge=1, le=32767)
    common_address_size: int = Field(default=2, ge=1, le=2)
    originator_address: bool = True
    command_timeout_s: float = Field(default=10, gt=0)
    interrogation_timeout_s: float = Field(default=60, gt=0)
    select_timeout_s: float = Field(default=10, gt=0)
    max_clients: int = Field(default=5, ge=1)
    send_end_of_init: bool = False

    @model_validator(mode="after")
    def check_windows_and_timers(self) -> "IEC104Settings":
        if self.w_window > self.k_window:
            raise ValueError(f"w_window ({self.w_window}) must not exceed k_window ({self.k_window})")
        if self.t2_timeout_s >= self.t1_timeout_s:
            raise ValueError(f"t2_timeout_s ({self.t2_timeout_s}) must be less than t1_timeout_s ({self.t1_timeout_s})")
        return self

    @classmethod
    def from_config(cls, overrides: Optional[Dict[str, Any]] = None) -> "IEC104Settings":
        """Settings from IEC104_CONFIG, optionally overridden"""
        values = dict(IEC104_CONFIG)
        values.update(overrides or {})
        return cls(**values)


def setup_logging(level: Optional[str] = None):
    """Configure root logging from LOGGING_CONFIG"""
    logging.basicConfig(
        level=getattr(logging, (level or LOGGING_CONFIG["level"]).upper(), logging.INFO),
        format=LOGGING_CONFIG["format"]
    )
