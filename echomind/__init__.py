"""echomind 顶层包。

该包提供命令行 AI 对话客户端的核心实现，
包括配置加载、领域模型、多 Provider 请求转换与流式解析、
对话引擎、以及可加密的会话持久化存储。
"""

__version__ = "0.3.0"
