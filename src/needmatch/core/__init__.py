"""Core domain package for needmatch.

Core contains retrieval, constraint, ranking, throttling and dispatch logic
without any transport or storage-specific code, keeping the business logic
portable.
"""
