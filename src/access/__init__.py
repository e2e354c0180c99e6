"""
Access - role-derived data scope
"""
