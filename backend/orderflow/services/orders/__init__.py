"""
Order lifecycle services: status rules, persistence and orchestration.
"""
