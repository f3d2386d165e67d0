"""
Business services.
Can import from: caching, monitoring, repositories
"""
