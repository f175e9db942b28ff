"""Render human-readable Markdown reports (internal)."""

from typing import List

from jakartashift.contracts import ImpactSummary
from jakartashift.kernel.plan import MigrationPlan


def render_analysis(analysis, summary: ImpactSummary) -> str:
    """Markdown report for an AnalysisResult."""
    lines = [f"# Migration analysis: `{analysis.project_path}`\n"]
    lines.append(f"- Knowledge base: {analysis.kb_version}")
    lines.append(f"- Readiness: {analysis.readiness.score:.2f} ({analysis.readiness.message})")
    lines.append(f"- Risk: {analysis.risk.level} ({analysis.risk.score:.2f})")
    lines.append(
        f"- Impact: {summary.files} file(s), {summary.usages} usage(s), "
        f"~{summary.estimated_minutes} min, complexity {summary.complexity}"
    )
    if analysis.graph.partial:
        lines.append("- **Partial graph**: some manifests could not be parsed")
    lines.append("")

    lines.append("## Blockers\n")
    if not analysis.blockers:
        lines.append("None.")
    for blocker in analysis.blockers:
        lines.append(f"- `{blocker.artifact}` ({blocker.kind.value}, confidence {blocker.confidence:.2f}): {blocker.reason}")
        for mitigation in blocker.mitigations:
            lines.append(f"  - {mitigation}")
    lines.append("")

    lines.append("## Recommendations\n")
    if not analysis.recommendations:
        lines.append("None.")
    for rec in analysis.recommendations:
        lines.append(f"- `{rec.current}` -> `{rec.target}` ({rec.compatibility.value})")
        for change in rec.breaking_changes:
            lines.append(f"  - {change}")
    lines.append("")

    if analysis.risk.factors:
        lines.append("## Risk factors\n")
        lines.extend(f"- {factor}" for factor in analysis.risk.factors)
        lines.append("")

    if analysis.warnings:
        lines.append("## Warnings\n")
        for warning in analysis.warnings:
            where = f" ({warning.path})" if warning.path else ""
            lines.append(f"- {warning.code.value}{where}: {warning.message}")
        lines.append("")
    return "\n".join(lines)


def render_plan(plan: MigrationPlan) -> str:
    """Markdown report for a MigrationPlan."""
    lines: List[str] = [f"# Migration plan `{plan.fingerprint[:12]}`\n"]
    for phase in plan.phases:
        lines.append(f"## Phase {phase.number}: {phase.description}\n")
        lines.append(f"- Risk: {phase.risk.value}")
        if phase.risk_factors:
            lines.append(f"- Factors: {'; '.join(phase.risk_factors)}")
        lines.append(f"- Files: {len(phase.files)} in {len(phase.batches)} batch(es)")
        for cycle in phase.cycles:
            lines.append(f"- Cycle (migrated together): {', '.join(f'`{f}`' for f in cycle)}")
        for i, batch in enumerate(phase.batches, start=1):
            lines.append(f"\n### Batch {i}\n")
            lines.extend(f"- `{f}`" for f in batch)
        lines.append("")
    return "\n".join(lines)
