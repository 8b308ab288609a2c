"""
Core infrastructure modules for database, image storage, notifications and utilities.
"""
