"""
STEPSYNC Coach Service

Real-time exercise coaching against a reference demonstration video.
"""
