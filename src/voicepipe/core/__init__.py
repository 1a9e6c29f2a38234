# Core module - Business logic

"""
Pipeline core: engine lifecycle, context resolution, remote enhancement and
the session orchestrator, plus the default audio capture adapter.
"""
