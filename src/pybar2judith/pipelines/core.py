from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import typer

from pybar2judith.config.load import load_config, snapshot_config_toml
from pybar2judith.config.schemas import Config
from pybar2judith.filters.hit_validator import HitLimits
from pybar2judith.io.adapters import BaseAdapter, make_source
from pybar2judith.io.judith_store import open_judith_output
from pybar2judith.pipelines.segmenter import EventAuthor, EventSegmenter, EventVerifier, SegmentationResult
from pybar2judith.pipelines.timestamps import TimestampChecker


@dataclass
class ConversionResult:
    output_path: Path
    plane: str
    n_events: int
    n_hits: int
    n_rows: int
    n_chunks: int
    reached_max_events: bool

    @classmethod
    def from_segmentation(cls, cfg: Config, seg: SegmentationResult) -> "ConversionResult":
        return cls(
            output_path=Path(cfg.io.output_path),
            plane=cfg.io.plane,
            n_events=seg.n_events,
            n_hits=seg.n_hits,
            n_rows=seg.n_rows,
            n_chunks=seg.n_chunks,
            reached_max_events=seg.reached_max_events,
        )


def apply_overrides(
    cfg: Config,
    *,
    plane: Optional[str] = None,
    append: Optional[bool] = None,
    author_mode: Optional[bool] = None,
    max_events: Optional[int] = None,
    check_timestamp: Optional[bool] = None,
) -> Config:
    """
    Return a re-validated copy of cfg with CLI overrides applied (None = keep).
    """
    data = cfg.model_dump()
    if plane is not None:
        data["io"]["plane"] = plane
    if append is not None:
        data["io"]["mode"] = "append" if append else "create"
    if author_mode is not None:
        data["convert"]["author_mode"] = author_mode
    if max_events is not None:
        data["convert"]["max_events"] = max_events
    if check_timestamp is not None:
        data["convert"]["check_timestamp"] = check_timestamp
    return Config.model_validate(data)


def convert(
    cfg: Config,
    *,
    source: Optional[BaseAdapter] = None,
    config_text: Optional[str] = None,
) -> ConversionResult:
    """
    Convert one pyBAR hit table into the Judith Event / <plane>/Hits tables.

    source overrides the input described by cfg.io (useful for in-memory
    streams). Raises a ConversionError subclass on any inconsistency; the
    output file is closed but not rolled back.
    """
    diag_level = cfg.run.diagnostics_level
    if diag_level >= 1:
        mode = "author" if cfg.convert.author_mode else "verifier"
        print(f"[run] input={cfg.io.input_path} -> output={cfg.io.output_path} "
              f"plane={cfg.io.plane} mode={mode} ({cfg.io.mode})")

    if source is None:
        source = make_source(cfg)

    out_path = Path(cfg.io.output_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    sink, events = open_judith_output(cfg, config_text=config_text)

    with sink:
        if cfg.convert.author_mode:
            strategy = EventAuthor(max_events=cfg.convert.max_events)
        else:
            checker = None
            if cfg.convert.check_timestamp:
                checker = TimestampChecker(tolerance=cfg.convert.timestamp_tolerance)
            strategy = EventVerifier(events, checker=checker)
            if diag_level >= 1:
                print(f"[run] verifying against {len(events)} existing events")

        segmenter = EventSegmenter(
            sink,
            strategy,
            HitLimits(
                max_hits=cfg.convert.max_hits,
                n_columns=cfg.convert.n_columns,
                n_rows=cfg.convert.n_rows,
            ),
            require_increasing_event_number=cfg.convert.require_increasing_event_number,
            diagnostics_level=diag_level,
        )
        seg = segmenter.run(source)

    result = ConversionResult.from_segmentation(cfg, seg)
    if diag_level >= 1:
        print(f"[sink] wrote {result.n_events} events with {result.n_hits} hits "
              f"from {result.n_rows} rows in {result.n_chunks} chunks to {out_path}:{cfg.io.plane}")
    return result


def run_conversion(
    cfg_path: str,
    *,
    plane: Optional[str] = None,
    append: Optional[bool] = None,
    author_mode: Optional[bool] = None,
    max_events: Optional[int] = None,
    check_timestamp: Optional[bool] = None,
) -> ConversionResult:
    """
    Run a conversion from a TOML config file.

    CLI flags override the corresponding [io]/[convert] fields when not None.
    """
    cfg = apply_overrides(
        load_config(cfg_path),
        plane=plane,
        append=append,
        author_mode=author_mode,
        max_events=max_events,
        check_timestamp=check_timestamp,
    )
    if cfg.run.diagnostics_level >= 1:
        print(f"[run] config = {cfg_path}")
    return convert(cfg, config_text=snapshot_config_toml(cfg_path))


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

app = typer.Typer(help="Convert pyBAR hit tables to Judith event/hit tables")


@app.command()
def main(
    cfg_path: str = typer.Argument(
        ...,
        help="Path to TOML config file",
    ),
    plane: Optional[str] = typer.Option(
        None,
        "--plane",
        help="Override [io].plane (group receiving this plane's Hits)",
    ),
    append: Optional[bool] = typer.Option(
        None,
        "--append / --create",
        help="Add to an existing output file or start a new one; overrides [io].mode",
    ),
    author_mode: Optional[bool] = typer.Option(
        None,
        "--author / --verify",
        help="Write a new Event table or check against the existing one; overrides [convert].author_mode",
    ),
    max_events: Optional[int] = typer.Option(
        None,
        "--max-events",
        min=0,
        help="Stop after this many events (author mode, 0 = all); overrides [convert].max_events",
    ),
    check_timestamp: Optional[bool] = typer.Option(
        None,
        "--check-timestamp / --no-check-timestamp",
        help="Check time stamp drift against the Event table (verifier mode)",
    ),
):
    """
    Convert one plane and print the output path.
    """
    result = run_conversion(
        cfg_path,
        plane=plane,
        append=append,
        author_mode=author_mode,
        max_events=max_events,
        check_timestamp=check_timestamp,
    )
    typer.echo(str(result.output_path))


if __name__ == "__main__":
    app()
