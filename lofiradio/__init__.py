"""
lofiradio - endless lofi player for the terminal
-------------------------------------------------
- Random tracks from a remote catalog, back-to-back
- Next track fetched and decoded while the current one plays
- Transient network and decode failures never stop the music
"""

VERSION = "1.2.3"
LOGGER_NAME = "LofiRadio"
