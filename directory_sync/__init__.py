"""
Directory Sync - Synchronize users and groups from LDAP directories into developer tools.

This package discovers users and groups from LDAP directory servers, caches
a snapshot per server, and reconciles that snapshot against tools such as
GitHub and GitLab through pluggable adapters, with dry-run previews,
conflict detection and an audit trail.
"""

__version__ = "1.0.0"
__author__ = "Directory Sync Team"
