from guidedflow.autosave.coordinator import AutoSaveCoordinator, AutoSaveStatus, SaveState

__all__ = ["AutoSaveCoordinator", "AutoSaveStatus", "SaveState"]
