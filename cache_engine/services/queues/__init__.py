"""
Write-behind queue, retry policies and periodic background workers.
"""
