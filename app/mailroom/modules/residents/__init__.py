"""
Residents module.

Residents are looked up by their external student ID within one mailroom.
Removal is a status change; rows are never deleted while packages point at them.
"""
