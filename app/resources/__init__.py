"""Versioned patch files written into staged projects."""
