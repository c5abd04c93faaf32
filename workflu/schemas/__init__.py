"""
WorkFlu - API Schemas
"""
