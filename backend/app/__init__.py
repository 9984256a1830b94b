"""App package initializer for the crowd-sourced tile cache service.

This package contains the backend that caches per-cell geographic attribute
data contributed by many clients and relays supplementary lookups to
third-party geodata providers.

- Stores tile records keyed by caller-assigned cell ids, merging repeated
  saves for the same cell onto one row
- Stores full map snapshots keyed by exact coordinates, accepting
  gzip-compressed bodies under size caps
- Aggregates elevation, hydrography and airport data from external
  providers, tolerating partial failure where several sources are combined
- Relays GET requests to a fixed allow-list of dataset hosts

See module sub-docstrings for details on architecture and usage.
"""
