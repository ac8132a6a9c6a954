"""
Silent Trust - server-side anti-spam decision engine for web forms.

Fuses device fingerprinting, behavioral biometrics, IP reputation and
submission frequency into a single 0-100 risk score and responds with a
graduated, silent action:
- allow / allow and log
- silently delay delivery
- silently drop
- soft / hard penalties on fingerprints and IPs
"""

__version__ = "0.1.0"
