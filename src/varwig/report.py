from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from jinja2 import Template

from .engine import ConditionMerge, PeakStatistics
from .models import Condition, GenotypeClass, Peak
from .plotting import CONDITION_TITLES, GENOTYPE_LABELS

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>varwig report: {{ peak.peak_id }}</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    h1, h2, h3 { margin-top: 1.2em; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    .warn { color: #a00; }
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>Peak {{ peak.peak_id }}</h1>
<p class="small">Generated: {{ generated_at }}</p>

<div class="grid">
  <div class="card">
    <h3>Variant</h3>
    <table>
      <tr><th>SNP</th><td><code>{{ peak.snp or "-" }}</code></td></tr>
      <tr><th>Position</th><td><code>{{ peak.chrom }}:{{ peak.position }}</code></td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Feature</h3>
    <table>
      <tr><th>Assay</th><td>{{ peak.assay }}</td></tr>
      <tr><th>Region</th><td><code>{{ peak.feature.chrom }}:{{ peak.feature.start }}-{{ peak.feature.end }}</code></td></tr>
      <tr><th>Strand</th><td>{{ peak.feature.strand or "." }}</td></tr>
      {% if peak.feature.gene %}<tr><th>Gene</th><td>{{ peak.feature.gene }}</td></tr>{% endif %}
    </table>
  </div>
</div>

{% if note %}<p class="warn">{{ note }}</p>{% endif %}
{% if failures %}
<p class="warn">{{ failures|length }} track(s) could not be read; statistics are partial.</p>
{% endif %}

<h2>Signal by genotype</h2>
<div class="grid">
{% for cond in conditions %}
  <div class="card">
    <h3>{{ cond.title }}</h3>
    <table>
      <tr><th>Genotype</th><th>n</th><th>min</th><th>Q1</th><th>median</th><th>Q3</th><th>max</th></tr>
      {% for row in cond.rows %}
      <tr>
        <td>{{ row.label }}</td><td>{{ row.n }}</td>
        {% if row.stats %}
        <td>{{ "%.3f"|format(row.stats.min) }}</td>
        <td>{{ "%.3f"|format(row.stats.quartile_1) }}</td>
        <td>{{ "%.3f"|format(row.stats.median) }}</td>
        <td>{{ "%.3f"|format(row.stats.quartile_3) }}</td>
        <td>{{ "%.3f"|format(row.stats.max) }}</td>
        {% else %}
        <td colspan="5" class="small">no data</td>
        {% endif %}
      </tr>
      {% endfor %}
    </table>
  </div>
{% endfor %}
</div>

{% if plot %}
<h2>Plot</h2>
<img src="{{ plot }}" alt="genotype box plot">
{% endif %}

{% if merges %}
<h2>Merged tracks</h2>
<table>
  <tr><th>Condition</th><th>Genotype</th><th>Inputs</th><th>Mean</th><th>Deviation</th></tr>
  {% for m in merges %}
  <tr>
    <td>{{ m.condition }}</td><td>{{ m.genotype }}</td><td>{{ m.n }}</td>
    <td>{% if m.path %}<code>{{ m.path }}</code>{% else %}<span class="small">{{ m.error or "-" }}</span>{% endif %}</td>
    <td>{% if m.deviation %}<code>{{ m.deviation }}</code>{% else %}-{% endif %}</td>
  </tr>
  {% endfor %}
</table>
{% endif %}

<h2>Notes</h2>
<ul>
  <li>Only counts and rank statistics are shown; individual sample values are never reported.</li>
  <li>Quartiles are taken at rank floor(n&middot;q) of the sorted values, without interpolation.</li>
</ul>

<hr>
<p class="small">varwig {{ version }}</p>
</body>
</html>"""
)


def _condition_rows(statistics: PeakStatistics) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for c in Condition:
        cond = statistics.statistics.get(c)
        rows = []
        for g in GenotypeClass:
            summary = cond.get(g)
            rows.append({"label": GENOTYPE_LABELS[g], "n": summary.n, "stats": summary.stats})
        out.append({"title": CONDITION_TITLES[c], "rows": rows})
    return out


def _merge_rows(merges: Sequence[ConditionMerge]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for m in merges:
        for g in GenotypeClass:
            track = m.outputs.get(g)
            rows.append(
                {
                    "condition": CONDITION_TITLES[m.condition],
                    "genotype": GENOTYPE_LABELS[g],
                    "n": track.n_inputs if track is not None else 0,
                    "path": str(track.path) if track is not None else None,
                    "deviation": str(track.deviation_path) if track is not None and track.deviation_path else None,
                    "error": m.failures.get(g),
                }
            )
    return rows


def render_report(
    *,
    outdir: str | Path,
    version: str,
    peak: Peak,
    statistics: PeakStatistics,
    merges: Sequence[ConditionMerge] = (),
    plot: Optional[str] = None,
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        peak=peak,
        note=statistics.note,
        failures=statistics.failures,
        conditions=_condition_rows(statistics),
        merges=_merge_rows(merges),
        plot=plot,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    logger.info("Wrote report %s", out_path)
    return out_path
