from setuptools import setup, find_packages

setup(
    name="stcalib",
    version="0.1.0",
    description="stcalib: Targetless Spatiotemporal Calibration of IMU, Radar, LiDAR and Camera Rigs",
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    entry_points={
        'console_scripts': [
            'stcalib = stcalib.cli:main',
        ],
    },
    install_requires=[
        "numpy",
        "scipy",
        "pyyaml",
        "tqdm",
        "opencv-python-headless",
    ],
    extras_require={
        "dev": [
            "pytest",
            "flake8",
            "black",
        ]
    }
)
