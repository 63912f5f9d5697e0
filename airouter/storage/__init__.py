"""Persistence layer: SQL models, sessions and Redis connections"""
