import os

from waitress import serve
from asset_tracker import create_app
from asset_tracker.database import seed_db

app = create_app()

# Seed the first admin account
with app.app_context():
    seed_db()

if __name__ == '__main__':
    serve(app, host=os.environ.get('HOST', '0.0.0.0'), port=int(os.environ.get('PORT', 5000)))
