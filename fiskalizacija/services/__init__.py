# fiskalizacija/services/__init__.py
"""
Domain services of the fiscalization app.

The CIS integration (ZKI, XML, signature, transport, response) lives in
fiskalizacija.services.cis and does not depend on the Django models.
"""
