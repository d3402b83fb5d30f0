"""mediadrop - submit, poll and fetch media downloads backed by yt-dlp."""

__version__ = "1.0.0"
