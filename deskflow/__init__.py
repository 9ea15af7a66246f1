"""deskflow - automation rule engine for a customer-service dashboard"""
