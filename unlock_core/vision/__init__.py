"""Camera access, presence sampling and the capture gate."""
