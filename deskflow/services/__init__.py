"""Automation services: conditions, actions, engine, dispatcher and collaborators."""
