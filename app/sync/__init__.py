"""Sync pipeline domain types and errors"""
