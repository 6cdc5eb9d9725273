# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Adaptive, resource-aware batch runner for sequencing pipeline stages."""

__version__ = "0.3.0"
