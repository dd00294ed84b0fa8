"""
STEPSYNC Core Module
"""
