"""JSON Schema package data for VTM documents."""
