"""
AWS Lambda Handler for the card lifecycle API

Uses apig-wsgi to wrap the Flask WSGI app for API Gateway v2 (HTTP API).
"""

import os
import sys

# Lambda runs with the handler's directory as the code root
sys.path.insert(0, os.path.dirname(__file__))

from apig_wsgi import make_lambda_handler

from app import app
from tmp_cleanup import cleanup_old_files

# Sweep import files left by a container that died mid-import
cleanup_old_files()

handler = make_lambda_handler(app, binary_support=True)
