"""
LockerForge scan inputs.

Components:
- records: loaders for external scanner output
- writable_dirs: writable-directory reduction into path exclusions
"""
