"""Agentic dispatch runtime over per-store event logs."""

__version__ = "0.1.0"
