"""
Operator tools for AuditVault.
"""
