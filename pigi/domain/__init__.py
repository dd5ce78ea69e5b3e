"""
Pure domain layer: data models, error taxonomy and the distribution filename
grammar. Nothing in here performs I/O.
"""
