"""
Trade processing worker and its process entry point.
"""
