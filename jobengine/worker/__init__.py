"""
Worker module.
Contains the job worker and the handler registry.
"""
