from face_crop_tool.app import main

main()
