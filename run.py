"""
Kilimo AI - Land Restoration Platform
Development server entry point
"""

import os

from kilimo import create_app

app = create_app()


if __name__ == '__main__':
    port = int(os.getenv('PORT', 5000))
    debug = app.config.get('APP_ENV') == 'development'

    print("\n" + "=" * 80)
    print("🚀 STARTING KILIMO AI SERVER")
    print("=" * 80)
    print(f"📍 Local:   http://127.0.0.1:{port}")
    print(f"🌍 Site:    {app.config.get('SITE_URL')}")
    print(f"🗄️  Supabase: {'configured' if app.config.get('SUPABASE_URL') else 'NOT configured'}")
    print(f"🤖 AI:      {'enabled' if app.config.get('AI_API_KEY') else 'fallback recommendations only'}")
    print("=" * 80 + "\n")

    app.run(debug=debug, host='0.0.0.0', port=port, use_reloader=debug)
