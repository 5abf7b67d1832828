from __future__ import annotations
import os
from spahub import create_app

def main() -> None:
    flask_app = create_app()

    if os.environ.get("SHOW_ROUTES", "0") in {"1", "true", "True"}:
        print("\n=== SPAHUB ROUTES ===")
        for rule in sorted(flask_app.url_map.iter_rules(), key=lambda r: r.rule):
            methods = ",".join(sorted(rule.methods - {"HEAD", "OPTIONS"}))
            print(f"{methods:<12} {rule.rule}")
        print("=====================\n")

    debug_enabled = os.environ.get("FLASK_DEBUG", "0") in {"1", "true", "True"}
    flask_app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=debug_enabled)

if __name__ == "__main__":
    main()
