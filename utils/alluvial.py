"""Alluvial diagram of oxygen-support trajectories, faceted by virus.

Blocks are the share of encounters in each state at a checkpoint day; ribbons
connect consecutive checkpoint days with width proportional to the number of
encounters making that transition. States are stacked by acuity.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Sequence

import matplotlib
matplotlib.use("Agg")
import matplotlib.patches as mpatches
import matplotlib.pyplot as plt
from matplotlib.path import Path as MplPath
import pandas as pd

from multistate import state_occupancy, state_transition_counts
from oxygen_support import STATE_ACUITY_ORDER

STATE_COLORS = {
    "Dead": "#1a1a1a",
    "Discharged": "#4daf4a",
    "IMV": "#b2182b",
    "NIV": "#ef8a62",
    "High-Flow": "#fddbc7",
    "7-15 LPM": "#d1e5f0",
    "1-6 LPM": "#67a9cf",
    "Room Air": "#2166ac",
}

plt.rcParams.update({
    "font.family": "sans-serif",
    "font.size": 9,
    "axes.titlesize": 11,
    "axes.titleweight": "bold",
    "axes.labelsize": 9,
    "xtick.labelsize": 8,
    "ytick.labelsize": 8,
    "legend.fontsize": 8,
})


def _node_offsets(counts: "OrderedDict[str, int]", total: int, gap: float) -> dict[str, float]:
    offsets = {}
    y = 0.0
    for state, n in counts.items():
        offsets[state] = y
        y += (n / total if total else 0.0) + (gap if n else 0.0)
    return offsets


def _ribbon(x0: float, x1: float, y0: float, y1: float, height: float) -> MplPath:
    mid = (x0 + x1) / 2
    verts = [
        (x0, -y0),
        (mid, -y0),
        (mid, -y1),
        (x1, -y1),
        (x1, -y1 - height),
        (mid, -y1 - height),
        (mid, -y0 - height),
        (x0, -y0 - height),
        (x0, -y0),
    ]
    codes = [
        MplPath.MOVETO,
        MplPath.CURVE4,
        MplPath.CURVE4,
        MplPath.CURVE4,
        MplPath.LINETO,
        MplPath.CURVE4,
        MplPath.CURVE4,
        MplPath.CURVE4,
        MplPath.CLOSEPOLY,
    ]
    return MplPath(verts, codes)


def draw_alluvial(
    ax,
    trajectories: pd.DataFrame,
    order: Sequence[str] = STATE_ACUITY_ORDER,
    block_width: float = 0.12,
    gap: float = 0.01,
    alpha: float = 0.45,
    title: str | None = None,
) -> None:
    """Draw one alluvial panel for a single virus group."""
    days = list(trajectories["checkpoint_day"].cat.categories)
    n_total = trajectories["encounter_id"].nunique()
    occupancy = state_occupancy(trajectories.drop(columns=["virus"], errors="ignore"))

    nodes: list[OrderedDict[str, int]] = []
    for day in days:
        day_counts = occupancy[occupancy["checkpoint_day"] == day].set_index("state")["n"]
        nodes.append(OrderedDict((s, int(day_counts.get(s, 0))) for s in order))
    offsets = [_node_offsets(col, n_total, gap) for col in nodes]

    transitions = state_transition_counts(trajectories.drop(columns=["virus"], errors="ignore"))
    rank = {s: i for i, s in enumerate(order)}
    for i in range(len(days) - 1):
        step = transitions[(transitions["day_from"] == int(days[i]))].copy()
        step["from_rank"] = step["from_state"].map(rank)
        step["to_rank"] = step["to_state"].map(rank)
        out_used = {s: 0.0 for s in order}
        # leaving flows stacked by target, arriving flows stacked by source
        for row in step.sort_values(["from_rank", "to_rank"]).itertuples(index=False):
            height = row.n / n_total
            y0 = offsets[i][row.from_state] + out_used[row.from_state]
            out_used[row.from_state] += height
            row_in = step[(step["to_state"] == row.to_state) & (step["from_rank"] < row.from_rank)]
            y1 = offsets[i + 1][row.to_state] + row_in["n"].sum() / n_total
            patch = mpatches.PathPatch(
                _ribbon(i + block_width / 2, i + 1 - block_width / 2, y0, y1, height),
                facecolor=STATE_COLORS.get(row.from_state, "#999999"),
                edgecolor="none",
                alpha=alpha,
            )
            ax.add_patch(patch)

    for i, col in enumerate(nodes):
        for state, n in col.items():
            if n <= 0:
                continue
            height = n / n_total
            ax.add_patch(
                mpatches.Rectangle(
                    (i - block_width / 2, -offsets[i][state] - height),
                    block_width,
                    height,
                    facecolor=STATE_COLORS.get(state, "#999999"),
                    edgecolor="white",
                    linewidth=0.5,
                )
            )

    ax.set_xlim(-0.5, len(days) - 0.5)
    ax.set_ylim(-(1 + gap * len(order)) - 0.02, 0.02)
    ax.set_xticks(range(len(days)))
    ax.set_xticklabels([f"Day {d}" for d in days])
    ax.set_yticks([])
    for side in ["top", "right", "left"]:
        ax.spines[side].set_visible(False)
    if title:
        ax.set_title(f"{title} (n = {n_total:,})")


def plot_alluvial(trajectories: pd.DataFrame, output_path: str, order: Sequence[str] = STATE_ACUITY_ORDER):
    """Render one alluvial panel per virus and save as a vector graphic."""
    groups = list(trajectories.groupby("virus", observed=True))
    fig, axes = plt.subplots(1, len(groups), figsize=(6.5 * len(groups), 6), squeeze=False)
    for ax, (virus, grp) in zip(axes[0], groups):
        draw_alluvial(ax, grp, order=order, title=str(virus))

    handles = [mpatches.Patch(color=STATE_COLORS[s], label=s) for s in order]
    fig.legend(handles=handles, loc="center right", frameon=False, title="Highest support")
    fig.tight_layout(rect=(0, 0, 0.88, 1))
    fig.savefig(output_path, bbox_inches="tight")
    plt.close(fig)
    print(f"Alluvial diagram saved to {output_path}")
    return output_path
