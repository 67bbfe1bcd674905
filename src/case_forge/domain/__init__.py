"""Domain types shared across pipeline stages: requests, drafts, results, events and errors.

The domain layer is free of IO side effects.
"""
