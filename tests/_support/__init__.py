"""Shared helpers for app-spine tests (importable as ``tests._support``)."""
