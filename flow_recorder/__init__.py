"""
Flow Recorder

Records a live session on an Android emulator or iOS simulator and turns the
observed actions into a replayable Maestro flow. Survives process restarts
through a pending-session snapshot and degrades from the native
``maestro record`` strategy to raw event capture when the tool fails.

Usage:
    from flow_recorder.recorder import get_recorder

    recorder = get_recorder()
    session = await recorder.start_recording("Login", "emulator-5554", "Pixel 7", "android")
    result = await recorder.stop_recording()
    print(result.flow_yaml)
"""

__version__ = "1.0.0"
