"""
Scheduler — periodically discovers due scheduled messages and queues them.
"""
