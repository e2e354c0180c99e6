"""
Shared layer: settings, logging, errors, coordination store and row store plumbing.
"""
