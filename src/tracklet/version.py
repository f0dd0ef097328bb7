LIBRARY_NAME = "tracklet-python"
VERSION = "0.1.0"
