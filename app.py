import os

from davel_library import create_app

app = create_app(os.environ.get('LIBRARY_CONFIG', 'davel_library.config.DevelopmentConfig'))

if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5000, debug=True)
