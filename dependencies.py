install_deps = ['numpy>=1.22.4',
                'imageio', # png encode/decode for data urls and cutouts
                'pillow', # imageio's png plugin
                'torch>=1.10',
                'transformers>=4.31', # SamModel / SamProcessor
                ]

server_deps = [
        'fastapi',
        'uvicorn',
        ]

test_deps = [
        'pytest',
        'httpx', # fastapi.testclient
        ]
