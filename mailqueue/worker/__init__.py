"""
Worker module.
Contains the stream consumer, per-record processing and the process runner.
"""
