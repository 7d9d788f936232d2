"""
Pydantic request, response and record models.
"""
