from .routes import scan_bp
