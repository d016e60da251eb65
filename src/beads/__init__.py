"""Beads - dependency-aware issue tracking."""
