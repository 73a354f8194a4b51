"""
HTTP surface: compliance lookups and admin access-control endpoints.
"""
