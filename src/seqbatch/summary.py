# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Summary report for a finished batch.

Rendered with Jinja into <study>/<stage>_summary.txt. The machine-readable
category lists are the progress store files; this report is for people.
"""

import logging
from pathlib import Path

import jinja2

from seqbatch.schemas import BatchSummary

logger = logging.getLogger(__name__)

SUMMARY_TEMPLATE = """\
{{ s.stage }} summary
{{ "=" * (s.stage|length + 8) }}
Study: {{ s.study }}
Path: {{ s.study_path }}
Started: {{ s.started_at.strftime("%Y-%m-%d %H:%M:%S") }}
{% if s.completed_at %}Completed: {{ s.completed_at.strftime("%Y-%m-%d %H:%M:%S") }}
{% endif %}{% if s.dry_run %}Mode: DRY RUN (nothing executed)
{% endif %}
Results
-------
Total jobs: {{ s.total }}
Succeeded: {{ s.succeeded|length }}
Already complete (skipped): {{ s.skipped|length }}
Succeeded with reduced fidelity: {{ s.degraded|length }}
Failed: {{ s.failed|length }}
{% if s.not_attempted %}Not attempted: {{ s.not_attempted|length }}
{% endif %}
Resources
---------
{% if s.budget %}CPUs: {{ s.budget.usable_cpus }} usable of {{ s.budget.total_cpus }} ({{ s.budget.reserved_cpus }} reserved)
Memory: {{ s.budget.usable_memory_mib }} MiB usable of {{ s.budget.available_memory_mib }} MiB available ({{ s.budget.total_memory_mib }} MiB total)
{% if s.budget.parallel_batches > 1 %}Shared with {{ s.budget.parallel_batches }} parallel batches
{% endif %}{% if s.budget.fallback %}WARNING: host introspection unavailable, default resources assumed
{% endif %}{% endif %}{% if s.fixed_overhead_mib %}Resident resource estimate: {{ s.fixed_overhead_mib }} MiB per job
{% endif %}{% for p in s.plans %}{{ p.tier.label }}: {{ p.parallel_jobs }} parallel x {{ p.threads_per_job }} threads, ~{{ p.memory_per_job_mib }} MiB per job (limited by {{ p.binding }}{% if p.expanded %}, threads expanded{% endif %})
{% endfor %}{% if s.peak_memory %}Observed peak memory: {{ s.peak_memory.mib }} MiB ({{ s.peak_memory.job_id }}, tier{{ s.peak_memory.tier }})
{% else %}Observed peak memory: unavailable
{% endif %}
{% if s.stage_settings %}Settings
--------
{% for key, value in s.stage_settings.items() %}{{ key }}: {{ value }}
{% endfor %}
{% endif %}{% if s.degraded %}Reduced fidelity
----------------
These jobs completed only in minimal-footprint mode. Check the marker file
in each output directory before using the results.
{% for job_id in s.degraded %}  {{ job_id }}
{% endfor %}
{% endif %}{% if s.failed %}Failed
------
{% for job_id in s.failed %}  {{ job_id }}
{% endfor %}
{% endif %}{% if s.planned_commands %}Planned commands
----------------
{% for job_id, commands in s.planned_commands.items() %}{{ job_id }}:
{% for argv in commands %}  {{ argv|join(" ") }}
{% endfor %}{% endfor %}
{% endif %}{% if s.state_dir %}State: {{ s.state_dir }}
{% endif %}{% if s.logs_dir %}Logs: {{ s.logs_dir }}/<job>.tier<N>.log
{% endif %}"""


def render_summary(summary: BatchSummary) -> str:
    """Render the human-readable report."""
    env = jinja2.Environment(autoescape=False, keep_trailing_newline=True)
    return env.from_string(SUMMARY_TEMPLATE).render(s=summary)


def summary_path_for(study_path: Path, stage_name: str) -> Path:
    return Path(study_path) / f"{stage_name}_summary.txt"


def write_summary(summary: BatchSummary) -> Path:
    """Render and write the report next to the study.

    Returns:
        Path of the written report.
    """
    path = summary.summary_path or summary_path_for(summary.study_path, summary.stage)
    path.write_text(render_summary(summary))
    summary.summary_path = path
    logger.info(f"Summary report saved: {path}")
    return path
