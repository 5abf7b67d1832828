from flask import Flask
from flask_cors import CORS

from .config import Config
from .extensions import db
from .routes import bp
from .routes_loyalty import bp_loyalty
from .routes_operations import bp_operations


def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)

    if isinstance(config_object, dict):
        app.config.from_mapping(config_object)
    elif config_object:
        app.config.from_object(config_object)
    else:
        app.config.from_envvar("APP_SETTINGS", silent=True)

    db.init_app(app)

    # Allow the web and mobile clients to talk to the backend
    CORS(app,
         origins=app.config["CORS_ORIGINS"],
         supports_credentials=True,
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    )

    app.register_blueprint(bp)
    app.register_blueprint(bp_loyalty)
    app.register_blueprint(bp_operations)

    return app
