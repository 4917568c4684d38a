"""
Configuration, security and error types for the Blood Logistics Service.
"""
