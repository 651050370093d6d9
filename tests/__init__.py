"""
Appointment backend test suite
"""
