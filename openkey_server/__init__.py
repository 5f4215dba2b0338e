"""
Reference chat service for OpenKey clients.
"""
