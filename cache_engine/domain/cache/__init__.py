"""
Cache Domain Module

Value objects, entities, exceptions and the backing store contract
shared by every cache service.
"""
