from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

import matplotlib.pyplot as plt

from .models import Condition, GenotypeClass
from .stats import ConditionStatistics, GroupStatistics, value_domain

logger = logging.getLogger(__name__)

GENOTYPE_LABELS = {
    GenotypeClass.REF: "Hom Ref",
    GenotypeClass.HET: "Het",
    GenotypeClass.HOM: "Hom Alt",
}

CONDITION_TITLES = {
    Condition.NI: "Non-infected",
    Condition.FLU: "Flu",
}


def _box_stats(stats: ConditionStatistics) -> List[Dict[str, object]]:
    """One matplotlib ``bxp`` stats dict per genotype class.

    Boxes are drawn straight from rank statistics; whiskers span min..max and
    no individual points are passed, so none can be drawn.
    """
    boxes: List[Dict[str, object]] = []
    for g in GenotypeClass:
        summary = stats.get(g)
        label = f"{GENOTYPE_LABELS[g]}\n(n={summary.n})"
        s = summary.stats
        if s is None:
            boxes.append({"label": label, "whislo": 0.0, "q1": 0.0, "med": 0.0, "q3": 0.0, "whishi": 0.0, "empty": True})
            continue
        boxes.append(
            {
                "label": label,
                "whislo": s.min,
                "q1": s.quartile_1,
                "med": s.median,
                "q3": s.quartile_3,
                "whishi": s.max,
                "fliers": [],
            }
        )
    return boxes


def plot_group_statistics(
    *,
    stats: GroupStatistics,
    out_png: str | Path,
    title: Optional[str] = None,
    ylabel: str = "Mean signal",
) -> Path:
    """Two-panel box plot (non-infected / Flu) of genotype-stratified statistics."""
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    fig, axes = plt.subplots(1, 2, figsize=(8, 4))
    for ax, condition in zip(axes, Condition):
        cond_stats = stats.get(condition)
        boxes = _box_stats(cond_stats)
        drawn = [s for s in boxes if not s.get("empty")]
        positions = [i + 1 for i, s in enumerate(boxes) if not s.get("empty")]
        if drawn:
            ax.bxp(drawn, positions=positions, showfliers=False, widths=0.6)
        ax.set_xticks(range(1, len(boxes) + 1))
        ax.set_xticklabels([str(s["label"]) for s in boxes])
        ax.set_xlim(0.4, len(boxes) + 0.6)

        domain = value_domain(cond_stats)
        if domain is not None:
            lo, hi = domain
            pad = (hi - lo) * 0.05 or max(abs(hi) * 0.05, 0.5)
            ax.set_ylim(lo - pad, hi + pad)
        else:
            ax.text(0.5, 0.5, "no data", ha="center", va="center", transform=ax.transAxes, color="#666")
        ax.set_title(CONDITION_TITLES[condition])
        ax.set_ylabel(ylabel)

    if title:
        fig.suptitle(title)
    fig.tight_layout()
    fig.savefig(out_png, dpi=160)
    plt.close(fig)
    return out_png


def plot_error(*, out_png: str | Path, message: str) -> Path:
    """Placeholder image carrying an error message."""
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    fig = plt.figure(figsize=(6, 2))
    fig.text(0.5, 0.5, message, ha="center", va="center", wrap=True, color="#a00")
    fig.savefig(out_png, dpi=160)
    plt.close(fig)
    return out_png
