"""blobkeeper - permanent file storage on a retention-bounded blob network"""

__version__ = "0.1.0"
