"""
Setup configuration for lidar-bridge.

Pure Python, no ROS2 dependencies. Install with:
    - pip install .
    - pip install -e ".[dev]"  (for development)
"""

from setuptools import setup, find_packages

setup(
    name='lidar-bridge',
    version='0.1.0',
    packages=find_packages(exclude=['test', 'tests']),

    install_requires=[
        'numpy',
        'pyserial>=3.5',
        'rplidar-roboticia',
        'pyzmq>=22.0',
        'foxglove-sdk>=0.10',
        'mcap>=1.0',
        'protobuf>=4.24',
        'foxglove-schemas-protobuf',
        'PyYAML',
    ],

    extras_require={
        'dev': [
            'pytest>=7.0',
            'pytest-cov',
            'pytest-timeout',
            'websockets>=13.0',
        ],
    },

    zip_safe=True,

    maintainer='Eyas Taifour',
    maintainer_email='etaifour@me.com',
    description='Bridge a spinning lidar to pub/sub, Foxglove WebSocket and MCAP',
    long_description=open('README.md').read() if __import__('os').path.exists('README.md') else '',
    long_description_content_type='text/markdown',
    license='MIT',

    entry_points={
        'console_scripts': [
            'lidar-bridge = lidar_bridge.cli:main',
        ],
    },

    python_requires='>=3.9',

    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Scientific/Engineering :: Robotics',
    ],
)
