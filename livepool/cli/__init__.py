"""CLI 模块 - 命令行接口。"""
