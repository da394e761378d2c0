"""
Product Authentication Registry - Core

Fingerprints, the metadata cache, the registry manager and its supporting
history, statistics, audit and lifecycle modules.
"""
