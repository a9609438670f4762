"""
Passkey Smart Wallet Domain Server

A small Flask server that:
1. Serves the Apple/Android domain association files passkeys need
2. Relays bundler and paymaster JSON-RPC requests through the configured transport
"""

import logging
import os
from typing import Any, Dict, Optional

import requests
from flask import Flask, jsonify, request

from bundler import create_rpc_session
from config import SmartWalletConfig

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Server defaults
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080

ANDROID_RELATIONS = [
    "delegate_permission/common.handle_all_urls",
    "delegate_permission/common.get_login_creds",
]


def apple_app_site_association(config: SmartWalletConfig) -> Dict[str, Any]:
    return {"webcredentials": {"apps": [f"{config.ios_team_id}.{config.bundle_id}"]}}


def android_asset_links(config: SmartWalletConfig) -> list:
    return [{
        "relation": ANDROID_RELATIONS,
        "target": {
            "namespace": "android_app",
            "package_name": config.bundle_id,
            "sha256_cert_fingerprints": [config.android_sha256_fingerprint],
        },
    }]


class DomainServer:
    """Domain association files plus a JSON-RPC relay for bundler/paymaster traffic"""

    def __init__(self, config: SmartWalletConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or create_rpc_session(config)
        self.app = Flask(__name__)
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Set up Flask routes"""
        self.app.route("/apple-app-site-association", methods=["GET"])(self.serve_aasa)
        self.app.route("/.well-known/apple-app-site-association", methods=["GET"], endpoint="serve_aasa_well_known")(self.serve_aasa)
        self.app.route("/.well-known/assetlinks.json", methods=["GET"])(self.serve_asset_links)
        self.app.route("/health", methods=["GET"])(self.health_check)
        self.app.route("/rpc/bundler", methods=["POST"])(self.relay_bundler)
        self.app.route("/rpc/paymaster", methods=["POST"])(self.relay_paymaster)
        self.app.register_error_handler(404, self.not_found)

    def _json_no_cache(self, payload):
        response = jsonify(payload)
        response.headers["Cache-Control"] = "no-cache"
        return response

    def serve_aasa(self):
        return self._json_no_cache(apple_app_site_association(self.config))

    def serve_asset_links(self):
        return self._json_no_cache(android_asset_links(self.config))

    def health_check(self):
        return jsonify({"status": "ok", "message": "Domain association server running"})

    def relay_bundler(self):
        return self._relay(self.config.bundler_url, "bundler")

    def relay_paymaster(self):
        if not self.config.paymaster_url:
            return jsonify({"error": "Paymaster relay not configured"}), 404
        return self._relay(self.config.paymaster_url, "paymaster")

    def _relay(self, upstream_url: str, kind: str):
        """Forward a JSON-RPC body unchanged and return the upstream JSON"""
        rpc_request = request.get_json(silent=True)
        if not isinstance(rpc_request, dict) or "method" not in rpc_request or "params" not in rpc_request:
            return jsonify({"error": "Missing method or params"}), 400

        logger.info(f"Relaying {kind} request: {rpc_request['method']}")
        try:
            response = self.session.post(upstream_url, json=rpc_request, timeout=self.config.request_timeout)
            return jsonify(response.json()), response.status_code
        except (requests.RequestException, ValueError) as e:
            logger.error(f"{kind} relay failed: {e}")
            return jsonify({"error": "Proxy failed", "message": str(e)}), 502

    def not_found(self, error):
        logger.warning(f"Unhandled request: {request.method} {request.path}")
        return jsonify({"error": "Not found", "requestedPath": request.path}), 404

    def run(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
        """Run the Flask application"""
        self.app.run(host=host, port=port)


if __name__ == "__main__":
    server = DomainServer(SmartWalletConfig.from_env())
    server.run(port=int(os.environ.get("PORT", DEFAULT_PORT)))
