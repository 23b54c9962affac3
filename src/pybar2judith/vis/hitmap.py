import numpy as np
import matplotlib.pyplot as plt
from pathlib import Path

from pybar2judith.io.judith_store import read_plane_hits

def occupancy(pix_x: np.ndarray, pix_y: np.ndarray, n_columns: int = 80, n_rows: int = 336) -> np.ndarray:
    """Hit counts per pixel, shape (n_rows, n_columns)."""
    img = np.zeros((n_rows, n_columns), dtype=np.int64)
    np.add.at(img, (pix_y, pix_x), 1)
    return img

def save_hitmap_png(h5_path: str, plane: str = "Plane0", out_png: str | None = None,
                    n_columns: int = 80, n_rows: int = 336):
    h5_path = str(h5_path)
    hits = read_plane_hits(h5_path, plane)
    img = occupancy(hits["PixX"], hits["PixY"], n_columns=n_columns, n_rows=n_rows)

    if out_png is None:
        out_png = str(Path(h5_path).with_name(f"{Path(h5_path).stem}_{plane}_hitmap.png"))

    plt.figure()
    plt.imshow(img, origin="lower", aspect="auto", interpolation="nearest")
    plt.colorbar(label="hits")
    plt.xlabel("column")
    plt.ylabel("row")
    plt.title(Path(h5_path).name + " : " + plane)
    plt.tight_layout()
    plt.savefig(out_png, dpi=150)
    plt.close()
    return out_png
