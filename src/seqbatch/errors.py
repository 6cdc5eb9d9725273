# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Batch-level errors.

Everything here is an infrastructure problem: it aborts the whole batch
before any job runs. Individual job failures are never raised, they are
recorded and carried to the next tier.
"""


class SeqbatchError(Exception):
    """Base class for errors that abort a batch."""

    pass


class ConfigError(SeqbatchError):
    """Raised when the configuration file is missing or invalid."""

    pass


class BatchFileError(SeqbatchError):
    """Raised when a batch specification file cannot be read."""

    pass


class MissingDependencyError(SeqbatchError):
    """Raised when a required external tool or resource is not available."""

    pass


class DiscoveryError(SeqbatchError):
    """Raised when no jobs can be enumerated for a study."""

    pass


class JobInputError(Exception):
    """Raised by a stage when a job's inputs cannot form a valid command.

    Caught by the job runner and turned into a failed attempt.
    """

    pass
