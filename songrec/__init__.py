"""
Song recommendations over a social music graph.
"""
