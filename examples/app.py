from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy

from flask_passkeys import (
    Passkeys,
    SQLAlchemyChallengeStore,
    SQLAlchemyUserStore,
    login_required,
    get_current_user,
)

app = Flask(__name__)
app.config["SECRET_KEY"] = "dev-secret-change-in-production"
app.config["SQLALCHEMY_DATABASE_URI"] = "sqlite:///passkeys.db"
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

app.config["PASSKEYS_RP_ID"] = "localhost"
app.config["PASSKEYS_RP_NAME"] = "Passkeys Demo"
app.config["PASSKEYS_ORIGIN"] = "http://localhost:5000"

db = SQLAlchemy(app)

with app.app_context():
    passkeys = Passkeys(
        app,
        user_store=SQLAlchemyUserStore(db.session),
        challenge_store=SQLAlchemyChallengeStore(db.session, challenge_ttl_seconds=120),
    )


# Routes
# The browser side posts {username} to /auth/register-challenge or
# /auth/login-challenge, hands the options to navigator.credentials,
# then posts {username, credential} to the matching -callback route.

@app.route("/")
def index():
    return jsonify({
        "register": "/auth/register-challenge",
        "login": "/auth/login-challenge",
    })


@app.route("/login")
def login():
    return jsonify({"message": "Log in with a passkey via /auth/login-challenge"})


@app.route("/account")
@login_required
def account():
    return jsonify(get_current_user().to_dict())


if __name__ == "__main__":
    app.run(debug=True)
