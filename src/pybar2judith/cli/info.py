from __future__ import annotations

import typer
from typing import Optional

from pybar2judith.io.judith_store import read_summary
from pybar2judith.vis.hitmap import save_hitmap_png

app = typer.Typer(help="Judith output inspection tools")

@app.command("summary")
def summary(
    h5_path: str = typer.Argument(..., help="Path to a Judith HDF5 file"),
):
    """Print the number of events and the per-plane event/hit counts."""
    info = read_summary(h5_path)
    typer.echo(f"Event: {info['n_events']} events")
    for plane, counts in info["planes"].items():
        typer.echo(f"{plane}: {counts['n_events']} events, {counts['n_hits']} hits")

@app.command("hitmap")
def hitmap(
    h5_path: str = typer.Argument(..., help="Path to a Judith HDF5 file"),
    plane: str = typer.Option("Plane0", "--plane", "-p", help="Plane group"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Output PNG path (defaults to <file>_<plane>_hitmap.png)"),
):
    """Render the pixel occupancy of one plane to a PNG."""
    out_png = save_hitmap_png(h5_path, plane=plane, out_png=out)
    typer.echo(f"Wrote {out_png}")

if __name__ == "__main__":
    app()
