"""Deployment lifecycle orchestrator for program-deployment loans."""
