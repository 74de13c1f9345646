"""
Queueing, scheduling and execution of hook-triggered commands.
"""
