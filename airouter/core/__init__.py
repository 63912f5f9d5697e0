"""Core types and errors"""
