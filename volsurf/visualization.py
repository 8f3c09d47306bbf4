"""
Visualization module: 2D smile charts and 3D volatility surfaces.

Two backends:
    - matplotlib: high-resolution static PNGs
    - plotly: interactive HTML with rotation, zoom, hover tooltips

Renderers only read VolatilitySurface snapshots. The 3D views resample
the sparse surface with ``to_grid``; the smile views plot the solved
points of a few expiries directly.

Design choices:
    - Dark background (#0c0c16), viridis colormap (perceptually uniform)
    - Axis labels use sigma notation (standard in vol surfaces)
    - 3D camera angle is set to show skew + term structure simultaneously
"""

from pathlib import Path
from typing import List, Optional

import numpy as np

import matplotlib
matplotlib.use("Agg")  # non-interactive backend for server/CI environments
import matplotlib.pyplot as plt
from mpl_toolkits.mplot3d import Axes3D  # noqa: F401 (needed for 3d projection)
from matplotlib import cm

import plotly.graph_objects as go

from . import config
from .logging_config import get_logger
from .surface_builder import VolatilitySurface

log = get_logger(__name__)


def _output_path(surface: VolatilitySurface, output_path, suffix: str) -> Path:
    if output_path is None:
        output_path = config.OUTPUT_DIR / f"{surface.underlying.lower()}_{suffix}"
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    return output_path


def select_smile_expiries(surface: VolatilitySurface, n: int = None) -> list:
    """Up to ``n`` expirations spread evenly from the front month to the back."""
    if n is None:
        n = config.MAX_SMILES
    expirations = surface.expirations
    if len(expirations) <= n:
        return expirations
    idx = np.unique(np.linspace(0, len(expirations) - 1, n).round().astype(int))
    return [expirations[i] for i in idx]


def _smile_label(surface: VolatilitySurface, expiration) -> str:
    days = (expiration - surface.as_of.date()).days
    return f"{expiration:%Y-%m-%d} ({days}d)"


# ════════════════════════════════════════════════════════════════════════
#  MATPLOTLIB — 3D SURFACE (static PNG)
# ════════════════════════════════════════════════════════════════════════

def plot_surface_matplotlib(
    surface: VolatilitySurface,
    output_path=None,
    smooth_sigma: Optional[float] = None,
) -> Path:
    """
    Render 3D implied volatility surface as a high-res PNG.

    Parameters
    ----------
    surface : solved surface, needs at least two expiries
    output_path : where to save the PNG (default: OUTPUT_DIR / "<ticker>_vol_surface_3d.png")
    smooth_sigma : optional Gaussian smoothing of the resampled grid
    """
    output_path = _output_path(surface, output_path, "vol_surface_3d.png")
    _, _, K_mesh, T_mesh, IV_mesh = surface.to_grid(smooth_sigma=smooth_sigma, extrapolate=True)

    fig = plt.figure(figsize=(config.FIG_WIDTH_3D, config.FIG_HEIGHT_3D))
    ax = fig.add_subplot(111, projection="3d")

    # IV in percentage for readability
    surf = ax.plot_surface(
        K_mesh, T_mesh, IV_mesh * 100,
        cmap=cm.viridis,
        edgecolor="none",
        alpha=0.95,
        rstride=1,
        cstride=1,
        antialiased=True,
    )

    ax.set_xlabel("Strike (K)", fontsize=13, labelpad=12, color="white")
    ax.set_ylabel("Time to Maturity (T)", fontsize=13, labelpad=12, color="white")
    ax.set_zlabel("Implied Volatility (σ) %", fontsize=13, labelpad=12, color="white")
    ax.set_title(
        f"{surface.underlying} — Implied Volatility Surface ({surface.as_of:%Y-%m-%d %H:%M} UTC)",
        fontsize=18, fontweight="bold", color="white", pad=20,
    )

    # dark theme styling
    ax.set_facecolor(config.DARK_BG)
    fig.patch.set_facecolor(config.DARK_BG)

    for axis in ["x", "y", "z"]:
        ax.tick_params(axis=axis, colors="white", labelsize=9)

    for pane_axis in (ax.xaxis, ax.yaxis, ax.zaxis):
        pane_axis.pane.fill = False
        pane_axis.pane.set_edgecolor("#333355")
    ax.grid(True, alpha=0.15, color="white")

    ax.view_init(elev=config.ELEV, azim=config.AZIM)

    cbar = fig.colorbar(surf, ax=ax, shrink=0.55, aspect=15, pad=0.08)
    cbar.set_label("Implied Vol (%)", fontsize=11, color="white")
    cbar.ax.tick_params(colors="white", labelsize=9)

    plt.tight_layout()
    plt.savefig(output_path, dpi=config.DPI, bbox_inches="tight",
                facecolor=config.DARK_BG, edgecolor="none")
    plt.close(fig)
    log.debug("chart_written", path=str(output_path))
    return output_path


# ════════════════════════════════════════════════════════════════════════
#  MATPLOTLIB — 2D SMILES (static PNG)
# ════════════════════════════════════════════════════════════════════════

def plot_smiles_matplotlib(surface: VolatilitySurface, output_path=None) -> Path:
    """
    Render the smile of a few expiries on one chart.

    Shows how skew steepens at shorter maturities.
    """
    output_path = _output_path(surface, output_path, "vol_skew_2d.png")
    S = surface.spot

    fig, ax = plt.subplots(figsize=(config.FIG_WIDTH_2D, config.FIG_HEIGHT_2D))
    fig.patch.set_facecolor(config.DARK_BG)
    ax.set_facecolor(config.DARK_BG)

    for i, expiration in enumerate(select_smile_expiries(surface)):
        smile = surface.smile(expiration)
        color = config.SKEW_COLORS[i % len(config.SKEW_COLORS)]
        ax.plot(smile["strike"], smile["iv"] * 100, color=color,
                linewidth=2.2, label=_smile_label(surface, expiration))

    # ATM line
    ax.axvline(S, color="white", alpha=0.35, linestyle="--", linewidth=1)
    ylim = ax.get_ylim()
    ax.text(S * 1.005, ylim[1] * 0.97, f"ATM ≈ ${S:.0f}",
            color="white", alpha=0.6, fontsize=10)

    ax.set_xlabel("Strike (K)", fontsize=13, color="white")
    ax.set_ylabel("Implied Volatility (σ) %", fontsize=13, color="white")
    ax.set_title(
        f"{surface.underlying} — Implied Volatility Skew by Expiry",
        fontsize=17, fontweight="bold", color="white",
    )
    ax.tick_params(colors="white", labelsize=10)
    ax.grid(True, alpha=config.GRID_COLOR_ALPHA, color="white")

    if ax.get_legend_handles_labels()[0]:
        leg = ax.legend(title="Expiry", loc="upper right", fontsize=10,
                        title_fontsize=11, facecolor="#191930", edgecolor="#ffffff30",
                        labelcolor="white")
        leg.get_title().set_color("white")

    for spine in ax.spines.values():
        spine.set_color("#333355")

    plt.tight_layout()
    plt.savefig(output_path, dpi=config.DPI, bbox_inches="tight",
                facecolor=config.DARK_BG, edgecolor="none")
    plt.close(fig)
    log.debug("chart_written", path=str(output_path))
    return output_path


# ════════════════════════════════════════════════════════════════════════
#  PLOTLY — 3D SURFACE (interactive HTML)
# ════════════════════════════════════════════════════════════════════════

def _axis(title: str, **extra) -> dict:
    return dict(
        title=dict(text=title, font=dict(size=14, color="#ddd")),
        tickfont=dict(size=10, color="#ccc"),
        gridcolor=f"rgba(200,200,200,{config.GRID_COLOR_ALPHA})",
        backgroundcolor=config.DARK_BG,
        **extra,
    )


def plot_surface_plotly(
    surface: VolatilitySurface,
    output_path=None,
    smooth_sigma: Optional[float] = None,
) -> Path:
    """
    Render interactive 3D vol surface as HTML.

    Can be opened in any browser — supports rotation, zoom, and
    hover tooltips showing exact (K, T, IV) values.
    """
    output_path = _output_path(surface, output_path, "vol_surface_3d.html")
    K_grid, T_grid, _, _, IV_mesh = surface.to_grid(smooth_sigma=smooth_sigma, extrapolate=True)

    fig = go.Figure(data=[go.Surface(
        x=K_grid, y=T_grid, z=IV_mesh,
        colorscale="Viridis",
        showscale=True,
        colorbar=dict(
            title=dict(text="IV (σ)", font=dict(size=13, color="white")),
            thickness=18, len=0.55, tickformat=".0%",
            tickfont=dict(color="white", size=11),
        ),
        lighting=dict(ambient=0.45, diffuse=0.65, specular=0.25, roughness=0.6),
        contours=dict(z=dict(show=True, usecolormap=True, project_z=False, width=1)),
        opacity=0.97,
        hovertemplate="Strike: %{x:.0f}<br>T: %{y:.3f}y<br>IV: %{z:.1%}<extra></extra>",
    )])

    fig.update_layout(
        title=dict(
            text=f"<b>{surface.underlying} — Implied Volatility Surface</b>",
            font=dict(size=22, color="white"), x=0.5,
        ),
        scene=dict(
            xaxis=_axis("Strike (K)"),
            yaxis=_axis("Time to Maturity (T)"),
            zaxis=_axis("Implied Vol (σ)", tickformat=".0%"),
            camera=config.PLOTLY_CAMERA,
            bgcolor=config.DARK_BG,
        ),
        paper_bgcolor=config.DARK_BG,
        font=dict(color="white"),
        width=1100, height=750,
        margin=dict(l=10, r=10, t=60, b=10),
    )

    fig.write_html(str(output_path))
    log.debug("chart_written", path=str(output_path))
    return output_path


# ════════════════════════════════════════════════════════════════════════
#  PLOTLY — 2D SMILES (interactive HTML)
# ════════════════════════════════════════════════════════════════════════

def plot_smiles_plotly(surface: VolatilitySurface, output_path=None) -> Path:
    """Render interactive 2D smile chart as HTML."""
    output_path = _output_path(surface, output_path, "vol_skew_2d.html")
    S = surface.spot

    fig = go.Figure()
    for i, expiration in enumerate(select_smile_expiries(surface)):
        smile = surface.smile(expiration)
        color = config.SKEW_COLORS[i % len(config.SKEW_COLORS)]
        fig.add_trace(go.Scatter(
            x=smile["strike"], y=smile["iv"],
            mode="lines+markers", name=_smile_label(surface, expiration),
            line=dict(color=color, width=2.5),
            marker=dict(size=4),
            hovertemplate="K=%{x:.0f}  IV=%{y:.1%}<extra></extra>",
        ))

    fig.add_vline(
        x=S, line_dash="dash", line_color="rgba(255,255,255,0.4)",
        annotation_text=f"ATM ≈ ${S:.0f}",
        annotation_font=dict(color="rgba(255,255,255,0.7)", size=12),
    )

    fig.update_layout(
        title=dict(
            text=f"<b>{surface.underlying} — IV Skew by Expiry</b>",
            font=dict(size=20, color="white"), x=0.5,
        ),
        xaxis=dict(
            title=dict(text="Strike (K)", font=dict(size=14, color="#ddd")),
            tickfont=dict(size=11, color="#ccc"),
            gridcolor="rgba(200,200,200,0.1)",
        ),
        yaxis=dict(
            title=dict(text="Implied Volatility (σ)", font=dict(size=14, color="#ddd")),
            tickformat=".0%",
            tickfont=dict(size=11, color="#ccc"),
            gridcolor="rgba(200,200,200,0.1)",
        ),
        plot_bgcolor=config.DARK_BG,
        paper_bgcolor=config.DARK_BG,
        font=dict(color="white"),
        legend=dict(
            x=0.74, y=0.97, bgcolor="rgba(25,25,45,0.85)",
            bordercolor="rgba(255,255,255,0.15)", borderwidth=1,
            font=dict(size=12),
            title=dict(text="Expiry", font=dict(size=12, color="#ccc")),
        ),
        width=1000, height=550,
        margin=dict(l=60, r=30, t=60, b=50),
    )

    fig.write_html(str(output_path))
    log.debug("chart_written", path=str(output_path))
    return output_path


def render_surface(
    surface: VolatilitySurface,
    output_dir=None,
    html: bool = True,
    smooth_sigma: Optional[float] = None,
) -> List[Path]:
    """Write every chart for one surface; returns the paths written."""
    output_dir = Path(config.OUTPUT_DIR if output_dir is None else output_dir)
    stem = surface.underlying.lower()
    paths = [
        plot_surface_matplotlib(surface, output_dir / f"{stem}_vol_surface_3d.png", smooth_sigma),
        plot_smiles_matplotlib(surface, output_dir / f"{stem}_vol_skew_2d.png"),
    ]
    if html:
        paths.append(plot_surface_plotly(surface, output_dir / f"{stem}_vol_surface_3d.html", smooth_sigma))
        paths.append(plot_smiles_plotly(surface, output_dir / f"{stem}_vol_skew_2d.html"))
    return paths
