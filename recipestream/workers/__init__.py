"""Transcode worker pool.

Workers claim queued transcode jobs with a compare-and-swap update, encode
outside any database transaction, and record the outcome in a short
transaction of their own.
"""
