__codename__ = "AGENTBRIDGE"
__tagline__ = "Governed intents from AI chat"
__version__ = "2.0.0"

BANNER = r"""
   _                    _   _          _     _
  /_\  __ _ ___ _ _  __| |_| |__ _ _ _(_)__| |__ _ ___
 / _ \/ _` / -_) ' \|_   _| '_ \ '_| / _` / _` / -_)
/_/ \_\__, \___|_||_| |_| |_.__/_| |_\__,_\__, \___|
      |___/                               |___/
"""
