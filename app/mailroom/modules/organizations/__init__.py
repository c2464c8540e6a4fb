"""
Organizations and mailrooms (tenant hierarchy).

Creating a mailroom seeds its package number pool (1-999, all available).
"""
