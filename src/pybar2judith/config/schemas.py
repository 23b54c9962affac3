from __future__ import annotations
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Literal

class RunCfg(BaseModel):
    """
    Global run controls.
    """

    # Diagnostics
    diagnostics_level: int = 1  # 0=off, 1=minimal, 2=verbose

    @field_validator("diagnostics_level")
    def _diag_range(cls, v: int) -> int:
        if v not in (0, 1, 2):
            raise ValueError("diagnostics_level must be 0, 1, or 2")
        return v

class IOCfg(BaseModel):
    """
    Input/output locations and table layout.

    TOML:

    [io]
    input_path    = "..."
    input_format  = "hdf5_pybar"    # "hdf5_pybar" | "root_pybar"
    output_path   = "..."
    output_format = "hdf5_judith"   # "hdf5_judith" | "root_judith"
    plane         = "Plane0"
    mode          = "create"        # "create" | "append"
    """

    input_path: str
    input_format: Literal["hdf5_pybar", "root_pybar"] = "hdf5_pybar"
    # HDF5 node / ROOT tree holding the flat hit table
    input_node: str = "Hits"

    output_path: str
    output_format: Literal["hdf5_judith", "root_judith"] = "hdf5_judith"

    # Namespace (group / directory) receiving this plane's Hits table
    plane: str = "Plane0"
    # create: start a fresh output file; append: add a plane to an existing one
    mode: Literal["create", "append"] = "create"

    @field_validator("plane")
    def _plane_name(cls, v: str) -> str:
        v = v.strip("/")
        if not v or "/" in v:
            raise ValueError("plane must be a single, non-empty group name")
        return v


class ConvertCfg(BaseModel):
    """
    Event segmentation and validation controls.

    author_mode = true writes a new Event table from the hit stream;
    author_mode = false checks the hit stream against an existing Event table.
    """

    author_mode: bool = True
    max_events: int = Field(0, ge=0)  # 0 = unbounded, author mode only

    check_timestamp: bool = False
    timestamp_tolerance: float = Field(0.01, gt=0.0)

    # Capacities; max_hits is part of the output schema contract
    buffer_capacity: int = Field(100_000, gt=0)
    chunk_size: int = Field(100_000, gt=0)
    max_hits: int = Field(4000, gt=0)

    # FE-I4 pixel matrix
    n_columns: int = Field(80, gt=0)
    n_rows: int = Field(336, gt=0)

    store_diagnostics: bool = False
    require_increasing_event_number: bool = True

    @model_validator(mode="after")
    def _chunk_fits_buffer(self) -> "ConvertCfg":
        if self.chunk_size > self.buffer_capacity:
            raise ValueError(
                f"chunk_size ({self.chunk_size}) must not exceed buffer_capacity ({self.buffer_capacity})"
            )
        return self


class Config(BaseModel):
    """
    Top-level TOML configuration.
    """

    run: RunCfg = Field(default_factory=RunCfg)
    io: IOCfg
    convert: ConvertCfg = Field(default_factory=ConvertCfg)

    @model_validator(mode="after")
    def _mode_consistency(self) -> "Config":
        # A fresh file can never hold the Event table a verifier needs
        if self.io.mode == "create" and not self.convert.author_mode:
            raise ValueError("verifier mode (author_mode = false) requires io.mode = 'append'")
        if self.convert.max_events and not self.convert.author_mode:
            raise ValueError("max_events applies to author mode only")
        return self
