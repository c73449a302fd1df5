"""
ChromaLearn Learning Module

Feedback records, the pattern knowledge base, the genetic weight optimizer
and the hybrid correction model.
"""
