# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Resource-aware batch scheduler with tiered degrading retry.

Modules:
- probe: host resources -> per-batch budget
- cost: per-stage thread and memory formulas
- planner: safe tier-1 concurrency
- runner: one attempt of one job
- tiers: tier1 -> tier2 -> tier3 state machine
- progress: resumable per-study state
- orchestrator: one stage over one or more studies
"""
