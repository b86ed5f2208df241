#!/usr/bin/env python3
"""Development server runner (status API + scheduler)"""
import os
from homelab_backup import create_app

if __name__ == '__main__':
    # Use development config for local testing
    app = create_app('development')

    # Run development server; the reloader would start a second scheduler
    port = int(os.environ.get('PORT', 5000))
    app.run(host='127.0.0.1', port=port, debug=True, use_reloader=False)
