"""
HeartGame quiz: persistence and resilience layer.
"""
