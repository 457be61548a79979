from app.recording.capture import AudioCaptureController

__all__ = ["AudioCaptureController"]
